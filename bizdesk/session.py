"""
Session storage: bearer token, signed-in user and cached permissions.

The token store reads expiry metadata from JWTs for UX purposes only (the
backend still validates every token). Opaque Laravel Sanctum tokens carry no
expiry, so they get a configurable default lifetime.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import jwt
from cachetools import TTLCache

from .config import settings
from .logging_config import get_logger
from .models import Permission, UserProfile
from .rbac import SUPERSEDING_PERMISSIONS

logger = get_logger(__name__)

SANCTUM_TOKEN_PATTERN = re.compile(r"^\d+\|[\w-]+$")


@dataclass
class TokenData:
    """Stored token with expiry metadata (unix seconds)."""

    token: str
    expires_at: float
    issued_at: float


def parse_jwt_claims(token: str) -> Dict[str, Any]:
    """
    Read JWT claims without verifying the signature.

    Returns an empty dict for tokens that are not JWTs.
    """
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as error:
        logger.debug(f"Token is not a decodable JWT: {type(error).__name__}")
        return {}


class TokenStore:
    """
    Holds the bearer token of the current session.

    Attributes:
        default_ttl: Lifetime assumed for tokens without an ``exp`` claim
        refresh_threshold: Seconds before expiry at which a refresh is due
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        refresh_threshold: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_ttl = (
            default_ttl if default_ttl is not None else settings.TOKEN_DEFAULT_TTL_SECONDS
        )
        self.refresh_threshold = (
            refresh_threshold
            if refresh_threshold is not None
            else settings.TOKEN_REFRESH_THRESHOLD_SECONDS
        )
        self._clock = clock
        self._data: Optional[TokenData] = None

    def store(self, token: str) -> TokenData:
        """Store a token, deriving expiry from its claims when present."""
        claims = parse_jwt_claims(token)
        now = self._clock()

        expires_at = float(claims["exp"]) if "exp" in claims else now + self.default_ttl
        issued_at = float(claims["iat"]) if "iat" in claims else now

        self._data = TokenData(token=token, expires_at=expires_at, issued_at=issued_at)
        logger.debug(
            "Stored session token",
            extra={"extra_fields": {"expires_in_s": int(expires_at - now)}},
        )
        return self._data

    def get_token(self) -> Optional[str]:
        return self._data.token if self._data else None

    def get_valid_token(self) -> Optional[str]:
        """Return the token unless it is missing or expired."""
        if self._data is None or self.is_expired():
            return None
        return self._data.token

    def is_expired(self) -> bool:
        if self._data is None:
            return True
        return self._clock() >= self._data.expires_at

    def should_refresh(self) -> bool:
        """True when the token is still valid but inside the refresh window."""
        remaining = self.time_until_expiry()
        return 0 < remaining <= self.refresh_threshold

    def time_until_expiry(self) -> float:
        if self._data is None:
            return 0.0
        return max(0.0, self._data.expires_at - self._clock())

    @property
    def expires_at(self) -> Optional[float]:
        return self._data.expires_at if self._data else None

    def clear(self) -> None:
        self._data = None

    @staticmethod
    def is_valid_token_format(token: Optional[str]) -> bool:
        """Accept Sanctum ``id|hash`` tokens and three-part JWTs."""
        if not token:
            return False
        return bool(SANCTUM_TOKEN_PATTERN.match(token)) or len(token.split(".")) == 3


class PermissionCache:
    """
    Time-limited cache of each user's permissions.

    Entries expire after ``ttl`` seconds; lookups for another user or an
    expired entry behave as a cache miss.
    """

    def __init__(
        self,
        ttl: Optional[float] = None,
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl if ttl is not None else settings.PERMISSION_CACHE_TTL_SECONDS
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=self.ttl, timer=timer)

    def store(self, user_id: str, permissions: List[Permission]) -> None:
        self._cache[user_id] = list(permissions)

    def get(self, user_id: str) -> Optional[List[Permission]]:
        return self._cache.get(user_id)

    def is_valid(self, user_id: str) -> bool:
        return user_id in self._cache

    def has_permission_cached(self, user_id: str, permission_key: str) -> bool:
        """Check a permission from cache; admin keys grant everything."""
        permissions = self.get(user_id)
        if not permissions:
            return False

        keys = {p.key for p in permissions if p.is_active}
        if keys & SUPERSEDING_PERMISSIONS:
            return True

        return any(p.key == permission_key and p.is_active for p in permissions)

    def get_permission_keys(self, user_id: str) -> List[str]:
        permissions = self.get(user_id) or []
        return [p.key for p in permissions if p.is_active]

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id, None)

    def clear(self) -> None:
        self._cache.clear()


class SessionStore:
    """Signed-in user of the current session, with permission caching."""

    def __init__(self, permission_cache: Optional[PermissionCache] = None) -> None:
        self.permission_cache = permission_cache or PermissionCache()
        self._user: Optional[UserProfile] = None

    def store_user(self, user: UserProfile) -> None:
        self._user = user
        if user.role is not None:
            self.permission_cache.store(user.id, user.role.permissions)

    def get_user(self) -> Optional[UserProfile]:
        return self._user

    def update_user(self, updates: Dict[str, Any]) -> Optional[UserProfile]:
        """
        Merge profile updates into the stored user.

        The company is merged field by field; the role is replaced only
        when ``updates`` carries one.
        """
        if self._user is None:
            return None

        current = self._user.model_dump()
        merged = {**current, **updates}

        if current.get("company") or updates.get("company"):
            merged["company"] = {
                **(current.get("company") or {}),
                **(updates.get("company") or {}),
            }
        merged["role"] = updates["role"] if "role" in updates else current.get("role")

        user = UserProfile.model_validate(merged)
        self.store_user(user)
        return user

    def clear(self) -> None:
        if self._user is not None:
            self.permission_cache.invalidate(self._user.id)
        self._user = None
