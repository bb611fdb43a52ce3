"""
BizDesk BFF - Main FastAPI Application.

Backend-for-frontend in front of the business-management REST API. Keeps the
session token in httponly cookies, proxies the chat and permission endpoints
with the caller's token, and gates routes on the caller's permissions. When
enabled, a background worker keeps one company's chat state live.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Set

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from .api_client import ApiClient, api_client
from .auth import unwrap_auth_payload
from .chat_api import ChatApi
from .chat_sync import extract_conversation_list, extract_last_page
from .config import settings
from .data_table import Column, DataTable
from .dependencies import (RequirePermissions, forget_session, get_api_client,
                           get_current_user, get_session_token,
                           require_session_token)
from .exceptions import (ApiException, ApiValidationException,
                         BizDeskException, NotAuthenticatedException,
                         PermissionDeniedException, RealtimeException,
                         ServiceUnavailableException, ValidationException)
from .logging_config import get_logger, setup_logging
from .metrics import metrics_endpoint, track_request_metrics
from .middleware import (PerformanceMonitoringMiddleware,
                         PrometheusMiddleware, RequestLoggingMiddleware)
from .models import Conversation, UserProfile
from .permissions_api import PermissionsApi
from .rbac import (CAN_ASSIGN_PERMISSIONS, CAN_MANAGE_SYSTEM_PERMISSIONS,
                   CAN_SEND_MESSAGES, CAN_VIEW_CONVERSATIONS,
                   PermissionChecker, group_permissions,
                   resolved_permission_keys)
from .session import TokenStore
from .worker import ChatSyncWorker

setup_logging(
    log_level=settings.LOG_LEVEL,
    service_name=settings.SERVICE_NAME,
    use_json=settings.LOG_JSON,
)
logger = get_logger(__name__)

chat_sync_worker = ChatSyncWorker(api_client)

# Backend pages fetched per export, and their size
EXPORT_MAX_BACKEND_PAGES = 100
EXPORT_BACKEND_PAGE_SIZE = 100

CONVERSATION_EXPORT_COLUMNS = [
    Column("id", "ID", can_hide=False),
    Column("customer_name", "Customer"),
    Column("customer_phone", "Phone"),
    Column("status", "Status"),
    Column("last_message", "Last message", sortable=False),
    Column("last_message_at", "Last message at"),
    Column("unread_count", "Unread"),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Verifies backend connectivity, starts the chat sync worker when enabled
    and closes the HTTP client on shutdown.
    """
    logger.info("=" * 80)
    logger.info(f"Starting {settings.APP_NAME} BFF")
    logger.info("=" * 80)

    logger.info(
        "Configuration loaded",
        extra={
            "extra_fields": {
                "service_name": settings.SERVICE_NAME,
                "debug_mode": settings.DEBUG,
                "log_level": settings.LOG_LEVEL,
                "api_url": settings.API_URL,
                "request_timeout": settings.REQUEST_TIMEOUT,
                "chat_sync_enabled": settings.CHAT_SYNC_ENABLED,
                "host": settings.HOST,
                "port": settings.PORT,
            }
        },
    )

    logger.info("Verifying backend API connectivity...")
    if await api_client.health_check():
        logger.info(
            "Backend API connectivity verified",
            extra={"extra_fields": {"api_url": settings.API_URL}},
        )
    else:
        logger.error(
            "Backend API is not responding",
            extra={
                "extra_fields": {
                    "api_url": settings.API_URL,
                    "impact": "Every proxied endpoint will fail until it recovers",
                }
            },
        )

    if settings.CHAT_SYNC_ENABLED:
        await chat_sync_worker.start()

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")
    await chat_sync_worker.stop()
    await api_client.close()
    logger.info("HTTP client closed")


app = FastAPI(
    title=f"{settings.APP_NAME} BFF",
    description="Backend-for-frontend for the business-management API",
    version="1.0.0",
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Add middleware (order matters - first added is last executed)
app.add_middleware(
    PerformanceMonitoringMiddleware, slow_request_threshold_ms=settings.SLOW_REQUEST_THRESHOLD_MS
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(PrometheusMiddleware, track_func=track_request_metrics)


def get_chat_sync_worker() -> ChatSyncWorker:
    return chat_sync_worker


# ==================== ERROR HANDLERS ====================


def _failed(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "failed", "message": message, **extra},
    )


@app.exception_handler(NotAuthenticatedException)
async def not_authenticated_handler(request: Request, exc: NotAuthenticatedException) -> JSONResponse:
    return _failed(401, exc.message)


@app.exception_handler(PermissionDeniedException)
async def permission_denied_handler(request: Request, exc: PermissionDeniedException) -> JSONResponse:
    logger.info(
        f"Permission denied: {request.method} {request.url.path}",
        extra={"extra_fields": {"permissions": exc.permissions}},
    )
    return _failed(403, exc.message, permissions=exc.permissions)


@app.exception_handler(ApiValidationException)
async def api_validation_handler(request: Request, exc: ApiValidationException) -> JSONResponse:
    return _failed(422, exc.message, errors=exc.errors)


@app.exception_handler(ValidationException)
async def validation_handler(request: Request, exc: ValidationException) -> JSONResponse:
    return _failed(422, exc.message, field=exc.field_name)


@app.exception_handler(ApiException)
async def api_error_handler(request: Request, exc: ApiException) -> JSONResponse:
    status_code = exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
    return _failed(status_code, exc.message)


@app.exception_handler(ServiceUnavailableException)
async def service_unavailable_handler(request: Request, exc: ServiceUnavailableException) -> JSONResponse:
    return _failed(503, exc.message)


@app.exception_handler(RealtimeException)
async def realtime_error_handler(request: Request, exc: RealtimeException) -> JSONResponse:
    return _failed(503, exc.message)


@app.exception_handler(BizDeskException)
async def bizdesk_error_handler(request: Request, exc: BizDeskException) -> JSONResponse:
    logger.error(f"Unhandled error: {exc.message}", extra={"extra_fields": exc.details})
    return _failed(500, exc.message)


# ==================== HEALTH & METRICS ====================


@app.get(
    "/health",
    tags=["Health"],
    summary="Health check",
    description="Check service health and backend API reachability",
)
async def health_check(
    api: ApiClient = Depends(get_api_client),
    worker: ChatSyncWorker = Depends(get_chat_sync_worker),
) -> Dict[str, Any]:
    """
    Returns:
        ``status`` is ``healthy`` when the backend API answers, else ``degraded``
    """
    backend_healthy = await api.health_check()

    return {
        "status": "healthy" if backend_healthy else "degraded",
        "service": settings.SERVICE_NAME,
        "dependencies": {
            "backend_api": "healthy" if backend_healthy else "unhealthy",
        },
        "chat_sync": {"enabled": worker.enabled, "running": worker.running},
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return await metrics_endpoint()


# ==================== AUTH ====================


class SignInRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class PermissionCheckRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1)


class SendMessageRequest(BaseModel):
    """Outgoing message; extra fields are passed through to the API."""

    model_config = ConfigDict(extra="allow")

    content: str = Field(..., min_length=1)
    message_type: str = "text"


def _user_payload(user: UserProfile) -> Dict[str, Any]:
    checker = PermissionChecker(user)
    return {
        "user": {**user.model_dump(), "full_name": user.full_name},
        "permissions": sorted(resolved_permission_keys(user)),
        "is_system_admin": checker.is_system_admin(),
        "is_company_admin": checker.is_company_admin(),
    }


@app.post("/auth/signin", tags=["Auth"])
async def signin(
    body: SignInRequest,
    api: ApiClient = Depends(get_api_client),
) -> JSONResponse:
    """Sign in against the API and store the session in httponly cookies."""
    response = await api.request(
        "/login",
        "POST",
        {"email": body.email, "password": body.password},
        requires_auth=False,
    )
    data = unwrap_auth_payload(response)
    token = data.get("token")
    if not token or not data.get("user"):
        raise ApiException("Authentication response did not include a token and user.")

    user = UserProfile.model_validate(data["user"])
    max_age = max(0, int(TokenStore().store(token).expires_at - time.time()))

    result = JSONResponse(content={"status": "success", **_user_payload(user)})
    for name, value in (
        (settings.SESSION_COOKIE_NAME, token),
        (settings.USER_COOKIE_NAME, user.id),
    ):
        result.set_cookie(
            name,
            value,
            max_age=max_age,
            httponly=True,
            secure=settings.SESSION_COOKIE_SECURE,
            samesite="lax",
        )

    logger.info("User signed in", extra={"extra_fields": {"user_id": user.id}})
    return result


@app.post("/auth/signout", tags=["Auth"])
async def signout(token: Optional[str] = Depends(get_session_token)) -> JSONResponse:
    """Clear the session cookies."""
    forget_session(token)
    result = JSONResponse(content={"status": "success"})
    result.delete_cookie(settings.SESSION_COOKIE_NAME)
    result.delete_cookie(settings.USER_COOKIE_NAME)
    return result


@app.get("/auth/me", tags=["Auth"])
async def me(user: UserProfile = Depends(get_current_user)) -> Dict[str, Any]:
    return {"status": "success", **_user_payload(user)}


# ==================== PERMISSIONS ====================


@app.get("/api/permissions", tags=["Permissions"])
async def list_permissions(
    category: Optional[str] = Query(None, max_length=100),
    search: Optional[str] = Query(None, max_length=100),
    user: UserProfile = Depends(
        RequirePermissions([CAN_MANAGE_SYSTEM_PERMISSIONS, CAN_ASSIGN_PERMISSIONS])
    ),
    token: str = Depends(require_session_token),
    api: ApiClient = Depends(get_api_client),
) -> Dict[str, Any]:
    """Permission catalogue, flat and grouped by category."""
    permissions, categories = await PermissionsApi(api).get_permissions(
        category=category, search=search, token=token
    )
    return {
        "status": "success",
        "permissions": [p.model_dump() for p in permissions],
        "categories": categories,
        "groups": group_permissions(permissions),
    }


@app.post("/api/permissions/check", tags=["Permissions"])
async def check_permissions(
    body: PermissionCheckRequest,
    user: UserProfile = Depends(get_current_user),
) -> Dict[str, Any]:
    """Evaluate permission keys for the signed-in user."""
    checker = PermissionChecker(user)
    return {
        "status": "success",
        "results": checker.check(body.permissions),
        "any": checker.has_any_permission(body.permissions),
        "all": checker.has_all_permissions(body.permissions),
    }


# ==================== CHAT ====================


def _conversation_params(
    page: Optional[int], per_page: Optional[int], status: Optional[str], search: Optional[str]
) -> Dict[str, Any]:
    return {"page": page, "per_page": per_page, "status": status, "search": search}


async def _fetch_all_conversations(chat: ChatApi, status: Optional[str]) -> List[Dict[str, Any]]:
    """
    Walk the backend's conversation pages.

    Stops at ``last_page`` when the backend reports one, otherwise at the
    first page that brings no conversation not already seen (an empty page,
    or a backend that ignores ``page``).
    """
    records: List[Dict[str, Any]] = []
    seen: Set[str] = set()

    for page in range(1, EXPORT_MAX_BACKEND_PAGES + 1):
        response = await chat.get_conversations(
            _conversation_params(page, EXPORT_BACKEND_PAGE_SIZE, status, None)
        )
        fresh = [
            raw
            for raw in extract_conversation_list(response)
            if isinstance(raw, dict) and str(raw.get("id")) not in seen
        ]
        if not fresh:
            break
        seen.update(str(raw.get("id")) for raw in fresh)
        records.extend(fresh)

        last_page = extract_last_page(response)
        if last_page is not None and page >= last_page:
            break
    else:
        logger.warning(
            "Conversation export stopped at the backend page limit",
            extra={"extra_fields": {"pages": EXPORT_MAX_BACKEND_PAGES}},
        )

    return records


@app.get("/api/chat/conversations", tags=["Chat"])
async def list_conversations(
    page: Optional[int] = Query(None, ge=1),
    per_page: Optional[int] = Query(None, ge=1, le=100),
    status: Optional[str] = Query(None, max_length=50),
    search: Optional[str] = Query(None, max_length=100),
    user: UserProfile = Depends(RequirePermissions(CAN_VIEW_CONVERSATIONS)),
    token: str = Depends(require_session_token),
    api: ApiClient = Depends(get_api_client),
) -> Any:
    return await ChatApi(api, token).get_conversations(
        _conversation_params(page, per_page, status, search)
    )


# Declared before the {conversation_id} route so "export" is not taken for an id
@app.get("/api/chat/conversations/export", tags=["Chat"])
async def export_conversations(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    status: Optional[str] = Query(None, max_length=50),
    search: Optional[str] = Query(None, max_length=100),
    user: UserProfile = Depends(RequirePermissions(CAN_VIEW_CONVERSATIONS)),
    token: str = Depends(require_session_token),
    api: ApiClient = Depends(get_api_client),
) -> Response:
    """
    CSV of one page of conversations.

    Every backend page is fetched first so ``search``, ``page`` and
    ``per_page`` apply to the whole conversation list.
    """
    records = await _fetch_all_conversations(ChatApi(api, token), status)
    rows = [Conversation.model_validate(raw).model_dump() for raw in records]

    table = DataTable(
        CONVERSATION_EXPORT_COLUMNS,
        rows,
        page_size=per_page,
        filter_column="customer_name",
        export_file_name="conversations",
    )
    table.set_filter(search)
    table.set_page(page)

    return Response(
        content=table.to_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={table.export_file_name}.csv"},
    )


@app.get("/api/chat/conversations/{conversation_id}", tags=["Chat"])
async def get_conversation(
    conversation_id: str,
    user: UserProfile = Depends(RequirePermissions(CAN_VIEW_CONVERSATIONS)),
    token: str = Depends(require_session_token),
    api: ApiClient = Depends(get_api_client),
) -> Any:
    return await ChatApi(api, token).get_conversation(conversation_id)


@app.post("/api/chat/conversations/{conversation_id}/messages", tags=["Chat"])
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    user: UserProfile = Depends(RequirePermissions(CAN_SEND_MESSAGES)),
    token: str = Depends(require_session_token),
    api: ApiClient = Depends(get_api_client),
) -> Any:
    logger.info(
        "Sending chat message",
        extra={"extra_fields": {"conversation_id": conversation_id, "user_id": user.id}},
    )
    return await ChatApi(api, token).send_message(conversation_id, body.model_dump())


@app.get("/api/chat/live", tags=["Chat"])
async def live_chat_state(
    user: UserProfile = Depends(RequirePermissions(CAN_VIEW_CONVERSATIONS)),
    worker: ChatSyncWorker = Depends(get_chat_sync_worker),
) -> Dict[str, Any]:
    """State held by the chat sync worker."""
    return {"status": "success", **worker.snapshot()}
