"""
Permission guards.

``PermissionGuard`` decides whether content gated on permission keys is
shown, hidden, replaced by a fallback or held back while the user is still
loading. ``requires_permissions`` applies the same rule to callables.
"""

import functools
import inspect
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, TypeVar, Union

from .exceptions import PermissionDeniedException
from .logging_config import get_logger
from .rbac import UserLike, has_all_permissions, has_any_permission

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

ACCESS_DENIED_MESSAGE = (
    "Access Denied. You do not have permission to view this content. "
    "Please contact your administrator to request access."
)


class GuardDecision(str, Enum):
    """Outcome of evaluating a permission guard."""

    GRANTED = "granted"
    DENIED = "denied"
    HIDDEN = "hidden"
    LOADING = "loading"


def _as_list(permissions: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(permissions, str):
        return [permissions]
    return list(permissions)


class PermissionGuard:
    """
    Gate content on one or more permission keys.

    Attributes:
        permissions: Required permission keys
        require_all: Require every key (True) or any one key (False)
        hide_on_denied: Render nothing instead of the fallback when denied
        fallback: Content shown when denied (defaults to an access-denied notice)
        loading: Content shown while the user is still loading
    """

    def __init__(
        self,
        permissions: Union[str, Iterable[str]],
        require_all: bool = False,
        hide_on_denied: bool = False,
        fallback: Any = None,
        loading: Any = None,
    ) -> None:
        self.permissions = _as_list(permissions)
        self.require_all = require_all
        self.hide_on_denied = hide_on_denied
        self.fallback = fallback
        self.loading = loading

    def is_satisfied(self, user: UserLike) -> bool:
        if self.require_all:
            return has_all_permissions(user, self.permissions)
        return has_any_permission(user, self.permissions)

    def evaluate(self, user: UserLike, is_loading: bool = False) -> GuardDecision:
        if is_loading:
            return GuardDecision.LOADING
        if self.is_satisfied(user):
            return GuardDecision.GRANTED
        if self.hide_on_denied:
            return GuardDecision.HIDDEN
        return GuardDecision.DENIED

    def render(self, user: UserLike, content: Any, is_loading: bool = False) -> Any:
        """
        Return what should be shown in place of ``content``.

        Returns:
            ``content`` when granted, None when hidden, otherwise the loading
            or fallback content (or their defaults).
        """
        decision = self.evaluate(user, is_loading=is_loading)
        if decision is GuardDecision.GRANTED:
            return content
        if decision is GuardDecision.HIDDEN:
            return None
        if decision is GuardDecision.LOADING:
            return self.loading
        return self.fallback if self.fallback is not None else ACCESS_DENIED_MESSAGE

    def enforce(self, user: UserLike) -> None:
        """Raise ``PermissionDeniedException`` unless the guard is satisfied."""
        if not self.is_satisfied(user):
            raise PermissionDeniedException(self.permissions, require_all=self.require_all)


def requires_permissions(
    permissions: Union[str, Iterable[str]],
    require_all: bool = False,
    user_arg: str = "user",
) -> Callable[[F], F]:
    """
    Decorate a function so it only runs for users holding ``permissions``.

    The user is taken from the argument named ``user_arg``. Works for plain
    and ``async`` functions.
    """
    guard = PermissionGuard(permissions, require_all=require_all)

    def decorator(func: F) -> F:
        signature = inspect.signature(func)
        if user_arg not in signature.parameters:
            raise TypeError(f"{func.__name__} has no '{user_arg}' parameter to check")

        def check(args: tuple, kwargs: dict) -> None:
            bound = signature.bind_partial(*args, **kwargs)
            user = bound.arguments.get(user_arg)
            try:
                guard.enforce(user)
            except PermissionDeniedException:
                logger.info(
                    f"Permission denied for {func.__name__}",
                    extra={"extra_fields": {"permissions": guard.permissions}},
                )
                raise

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                check(args, kwargs)
                return await func(*args, **kwargs)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            check(args, kwargs)
            return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
