"""
Authentication against the backend API.

Signs users in and out, keeps the session token and profile in sync with the
backend, and exposes permission checks for the signed-in user.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional

from .api_client import ApiClient
from .exceptions import ApiException, BizDeskException, NotAuthenticatedException
from .logging_config import get_logger
from .models import UserProfile
from .rbac import PermissionChecker
from .session import SessionStore, TokenStore

logger = get_logger(__name__)


def unwrap_auth_payload(response: Any) -> Dict[str, Any]:
    """Return ``data`` of a successful auth response or raise."""
    if (
        isinstance(response, Mapping)
        and response.get("status") == "success"
        and isinstance(response.get("data"), Mapping)
    ):
        return dict(response["data"])
    message = response.get("message") if isinstance(response, Mapping) else None
    raise ApiException(message if isinstance(message, str) and message else "Authentication failed.")


class AuthService:
    """
    Session lifecycle for one signed-in user.

    Attributes:
        api: Backend API client; its token store is the session token store
        session: Signed-in user and cached permissions
    """

    def __init__(self, api: ApiClient, session: Optional[SessionStore] = None) -> None:
        self.api = api
        self.session = session or SessionStore()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def tokens(self) -> TokenStore:
        return self.api.token_store

    @property
    def user(self) -> Optional[UserProfile]:
        return self.session.get_user()

    @property
    def permissions(self) -> PermissionChecker:
        return PermissionChecker(self.session.get_user())

    def _start_session(self, data: Mapping[str, Any]) -> UserProfile:
        token = data.get("token")
        user_data = data.get("user")
        if not token or not user_data:
            raise ApiException("Authentication response did not include a token and user.")

        self.tokens.store(token)
        user = UserProfile.model_validate(user_data)
        self.session.store_user(user)

        logger.info(
            "Signed in",
            extra={"extra_fields": {"user_id": user.id, "company_id": user.company_id}},
        )
        return user

    async def sign_in(self, email: str, password: str) -> UserProfile:
        """Sign in with email and password, replacing any current session."""
        self.sign_out()
        response = await self.api.request(
            "/login", "POST", {"email": email, "password": password}, requires_auth=False
        )
        return self._start_session(unwrap_auth_payload(response))

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        company_name: str,
        phone: Optional[str] = None,
    ) -> UserProfile:
        """Register a user together with their company and sign them in."""
        self.sign_out()
        response = await self.api.request(
            "/register",
            "POST",
            {
                "email": email,
                "password": password,
                "password_confirmation": password,
                "first_name": first_name,
                "last_name": last_name,
                "phone": phone,
                "company_name": company_name,
            },
            requires_auth=False,
        )
        return self._start_session(unwrap_auth_payload(response))

    def sign_out(self) -> None:
        """Drop the local session. The backend token is left to expire."""
        if self.session.get_user() is not None:
            logger.info("Signed out", extra={"extra_fields": {"user_id": self.user.id}})
        self.tokens.clear()
        self.session.clear()

    async def refresh_profile(self) -> Optional[UserProfile]:
        """
        Reload the signed-in user, including fresh permissions.

        Failures are logged and the cached profile is kept.
        """
        user = self.session.get_user()
        if user is None:
            return None

        try:
            response = await self.api.request(f"/users/{user.id}", "GET")
            data = unwrap_auth_payload(response)
            if data.get("user"):
                fresh = UserProfile.model_validate(data["user"])
                self.session.store_user(fresh)
                return fresh
        except BizDeskException as error:
            logger.warning(
                "Profile refresh skipped",
                extra={"extra_fields": {"user_id": user.id, "error": error.message}},
            )
        return self.session.get_user()

    async def refresh_token(self) -> str:
        """
        Confirm the token with the backend, storing a replacement if one is issued.

        Concurrent callers share one in-flight refresh.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._do_refresh_token())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh_token(self) -> str:
        current = self.tokens.get_token()
        if not current:
            raise NotAuthenticatedException("No token to refresh")

        user = self.session.get_user()
        if user is None:
            return current

        try:
            response = await self.api.request(f"/users/{user.id}", "GET", token=current)
        except BizDeskException as error:
            logger.debug(f"Token refresh skipped: {error.message}")
            return current

        data = response.get("data") if isinstance(response, Mapping) else None
        new_token = data.get("token") if isinstance(data, Mapping) else None
        if new_token:
            self.tokens.store(new_token)
            return new_token
        return current

    async def refresh_if_due(self) -> Optional[str]:
        """Refresh the token when it is inside its refresh window."""
        if self.tokens.should_refresh():
            return await self.refresh_token()
        return self.tokens.get_valid_token()
