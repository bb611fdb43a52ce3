"""
Role-based permission evaluation.

A user's resolved permission set is the keys of the active permissions on
their role. Two administrative keys supersede every other check:
``can_manage_system`` (all companies) and ``can_manage_company`` (the user's
own company; the backend scopes the data). Evaluation is stateless and never
raises: a missing user, role or key simply yields ``False``.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .models import Permission, UserProfile

CAN_MANAGE_SYSTEM = "can_manage_system"
CAN_MANAGE_COMPANY = "can_manage_company"
CAN_MANAGE_COMPANIES = "can_manage_companies"
CAN_ACCESS_ADMIN_PORTAL = "can_access_admin_portal"
CAN_LOGOUT = "can_logout"

CAN_VIEW_CONVERSATIONS = "can_view_conversations"
CAN_SEND_MESSAGES = "can_send_messages"
CAN_MANAGE_CHAT = "can_manage_chat"
CAN_ASSIGN_PERMISSIONS = "can_assign_permissions"
CAN_MANAGE_SYSTEM_PERMISSIONS = "can_manage_system_permissions"

SUPERSEDING_PERMISSIONS = frozenset({CAN_MANAGE_SYSTEM, CAN_MANAGE_COMPANY})

ADMIN_ROLE = "admin"
SUPER_ADMIN_ROLE = "super_admin"

UserLike = Union[UserProfile, Mapping[str, Any], None]


def as_user_profile(user: UserLike) -> Optional[UserProfile]:
    """Accept a ``UserProfile`` or a raw API user mapping."""
    if user is None or isinstance(user, UserProfile):
        return user
    return UserProfile.model_validate(user)


def resolved_permission_keys(user: UserLike) -> Set[str]:
    """Keys of the active permissions on the user's role."""
    profile = as_user_profile(user)
    if profile is None or profile.role is None:
        return set()
    return {p.key for p in profile.role.permissions if p.is_active}


def has_permission(user: UserLike, permission: str) -> bool:
    """
    Check whether ``user`` holds ``permission``.

    Args:
        user: Signed-in user, or None when nobody is signed in
        permission: Permission key to check

    Returns:
        True if the key is in the user's resolved permission set or the user
        holds a superseding administrative key.
    """
    profile = as_user_profile(user)

    # Any signed-in user may sign out
    if permission == CAN_LOGOUT:
        return profile is not None

    if profile is None or profile.role is None:
        return False

    keys = resolved_permission_keys(profile)

    if keys & SUPERSEDING_PERMISSIONS:
        return True

    if permission == CAN_ACCESS_ADMIN_PORTAL and CAN_MANAGE_COMPANIES in keys:
        return True

    return permission in keys


def has_any_permission(user: UserLike, permissions: Iterable[str]) -> bool:
    """True if the user holds at least one of ``permissions``."""
    return any(has_permission(user, key) for key in permissions)


def has_all_permissions(user: UserLike, permissions: Iterable[str]) -> bool:
    """True if the user holds every key in ``permissions``."""
    return all(has_permission(user, key) for key in permissions)


def has_role(user: UserLike, role: str) -> bool:
    profile = as_user_profile(user)
    return bool(profile and profile.role and profile.role.name == role)


def is_super_admin(user: UserLike) -> bool:
    return has_role(user, SUPER_ADMIN_ROLE)


def is_admin(user: UserLike) -> bool:
    return has_role(user, ADMIN_ROLE) or has_role(user, SUPER_ADMIN_ROLE)


def group_permissions(permissions: Iterable[Permission]) -> List[Dict[str, Any]]:
    """
    Group permission keys by category, keeping first-seen category order.

    Returns:
        ``[{"title": category, "permissions": [key, ...]}, ...]``
    """
    groups: Dict[str, List[str]] = {}
    for permission in permissions:
        groups.setdefault(permission.category, []).append(permission.key)
    return [{"title": title, "permissions": keys} for title, keys in groups.items()]


class PermissionChecker:
    """
    Permission checks bound to one user.

    Mirrors the checks UI code performs against the signed-in user, so call
    sites do not pass the user around.
    """

    def __init__(self, user: UserLike) -> None:
        self.user = as_user_profile(user)

    def has_permission(self, permission: str) -> bool:
        return has_permission(self.user, permission)

    def has_any_permission(self, permissions: Iterable[str]) -> bool:
        return has_any_permission(self.user, permissions)

    def has_all_permissions(self, permissions: Iterable[str]) -> bool:
        return has_all_permissions(self.user, permissions)

    # Literal key membership; has_permission grants either key to both admins
    def is_system_admin(self) -> bool:
        return CAN_MANAGE_SYSTEM in resolved_permission_keys(self.user)

    def is_company_admin(self) -> bool:
        return CAN_MANAGE_COMPANY in resolved_permission_keys(self.user)

    def is_admin(self) -> bool:
        return self.is_system_admin() or self.is_company_admin()

    def check(self, permissions: Iterable[str]) -> Dict[str, bool]:
        """Evaluate each key individually."""
        return {key: self.has_permission(key) for key in permissions}
