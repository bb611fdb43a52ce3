"""
Request middleware for the BFF service.

Each request gets an id (``X-Request-ID`` from the caller or a fresh one)
that is echoed back and forwarded to the backend by the API client. Request
logs carry the agent's user id when the session identifies one, slow
requests are flagged and every route feeds the Prometheus request metrics.
"""

import time
from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import settings
from .logging_config import clear_request_id, get_logger, set_request_id

logger = get_logger(__name__)

UNTRACKED_PATHS = ("/health", "/metrics")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _session_user(request: Request) -> Optional[str]:
    return request.headers.get("X-User-ID") or request.cookies.get(settings.USER_COOKIE_NAME)


def _route_path(request: Request) -> str:
    # Route template, so /conversations/{id} stays a single label
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id to the request and logs its outcome.

    Server errors are logged at WARNING, everything else at INFO. The id is
    cleared once the response is produced so background work started later
    does not inherit it.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = set_request_id(request.headers.get("X-Request-ID") or None)
        fields: Dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "user_id": _session_user(request),
            "client_host": request.client.host if request.client else None,
        }
        started = time.perf_counter()
        logger.debug(f"--> {request.method} {request.url.path}", extra={"extra_fields": fields})

        try:
            response = await call_next(request)
        except Exception as exc:
            fields.update(duration_ms=_elapsed_ms(started), error=str(exc))
            logger.error(
                f"{request.method} {request.url.path} raised {type(exc).__name__}",
                extra={"extra_fields": fields},
            )
            raise
        finally:
            clear_request_id()

        response.headers["X-Request-ID"] = request_id
        fields.update(status_code=response.status_code, duration_ms=_elapsed_ms(started))
        level = "warning" if response.status_code >= 500 else "info"
        getattr(logger, level)(
            f"<-- {request.method} {request.url.path} {response.status_code}",
            extra={"extra_fields": fields},
        )
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Flags requests slower than ``slow_request_threshold_ms``."""

    def __init__(self, app: ASGIApp, slow_request_threshold_ms: float = 1000.0) -> None:
        super().__init__(app)
        self.slow_request_threshold_ms = slow_request_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = _elapsed_ms(started)

        if duration_ms > self.slow_request_threshold_ms:
            logger.warning(
                f"Slow request: {request.method} {_route_path(request)} took {duration_ms}ms",
                extra={
                    "extra_fields": {
                        "endpoint": _route_path(request),
                        "duration_ms": duration_ms,
                        "threshold_ms": self.slow_request_threshold_ms,
                    }
                },
            )
        return response


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Reports every request to ``track_func``.

    ``track_func`` is called with ``method, endpoint, status_code, duration``
    (seconds); the health and metrics endpoints are not reported.
    """

    def __init__(
        self,
        app: ASGIApp,
        track_func: Callable[..., None],
        untracked_paths: Iterable[str] = UNTRACKED_PATHS,
    ) -> None:
        super().__init__(app)
        self.track_func = track_func
        self.untracked_paths = frozenset(untracked_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.untracked_paths:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        self.track_func(
            method=request.method,
            endpoint=_route_path(request),
            status_code=response.status_code,
            duration=time.perf_counter() - started,
        )
        return response
