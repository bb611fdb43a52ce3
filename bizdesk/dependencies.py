"""
FastAPI dependencies resolving the caller's session.

The bearer token comes from the session cookie or the ``Authorization``
header and the user id from the user cookie. Profiles are fetched from the
backend and cached per token for the permission cache lifetime.
"""

from typing import Iterable, Optional, Union

from cachetools import TTLCache
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .api_client import ApiClient, api_client
from .auth import unwrap_auth_payload
from .config import settings
from .exceptions import ApiException, NotAuthenticatedException
from .guard import PermissionGuard
from .logging_config import get_logger
from .models import UserProfile

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)

_profile_cache: TTLCache = TTLCache(maxsize=1024, ttl=settings.PERMISSION_CACHE_TTL_SECONDS)


def get_api_client() -> ApiClient:
    return api_client


def clear_profile_cache() -> None:
    _profile_cache.clear()


def forget_session(token: Optional[str]) -> None:
    if token:
        _profile_cache.pop(token, None)


async def get_session_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Session token from the cookie, else from the bearer header."""
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token
    return credentials.credentials if credentials else None


async def require_session_token(token: Optional[str] = Depends(get_session_token)) -> str:
    if not token:
        raise NotAuthenticatedException()
    return token


async def get_current_user(
    request: Request,
    token: str = Depends(require_session_token),
    api: ApiClient = Depends(get_api_client),
) -> UserProfile:
    """
    Resolve the signed-in user.

    Raises:
        NotAuthenticatedException: No user id, or the backend rejected the token
    """
    user_id = request.cookies.get(settings.USER_COOKIE_NAME) or request.headers.get("X-User-ID")

    cached = _profile_cache.get(token)
    if cached is not None and (user_id is None or cached.id == user_id):
        return cached

    if not user_id:
        raise NotAuthenticatedException()

    try:
        response = await api.request(f"/users/{user_id}", "GET", token=token)
    except ApiException as error:
        if error.status_code in (401, 403, 419):
            raise NotAuthenticatedException() from error
        raise

    data = unwrap_auth_payload(response)
    if not data.get("user"):
        raise NotAuthenticatedException()

    user = UserProfile.model_validate(data["user"])
    _profile_cache[token] = user
    logger.debug("Resolved session user", extra={"extra_fields": {"user_id": user.id}})
    return user


class RequirePermissions:
    """
    Dependency admitting only users that hold the given permissions.

    Example:
        @app.get("/api/permissions")
        async def list_permissions(
            user: UserProfile = Depends(RequirePermissions(["can_assign_permissions"])),
        ): ...
    """

    def __init__(self, permissions: Union[str, Iterable[str]], require_all: bool = False) -> None:
        self.guard = PermissionGuard(permissions, require_all=require_all)

    async def __call__(self, user: UserProfile = Depends(get_current_user)) -> UserProfile:
        self.guard.enforce(user)
        return user
