"""
Permission catalogue endpoints.

The backend returns permissions either as a flat list or grouped by category;
both shapes are flattened into ``Permission`` records here.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

from .api_client import ApiClient
from .exceptions import ApiException, BizDeskException
from .logging_config import get_logger
from .models import Permission

logger = get_logger(__name__)


def _with_system_flag(raw: Mapping[str, Any]) -> Permission:
    permission = Permission.model_validate(raw)
    permission.is_system_permission = bool(permission.is_system)
    return permission


def flatten_permissions_response(response: Any) -> Tuple[List[Permission], List[str]]:
    """
    Normalize a ``/permissions`` response.

    Returns:
        ``(permissions, categories)``; categories come from the group keys
        when the response is grouped, otherwise from ``categories``.
    """
    if not isinstance(response, Mapping):
        return [], []

    raw = response.get("permissions")

    if isinstance(raw, Mapping):
        permissions = [
            _with_system_flag(item)
            for group in raw.values()
            for item in (group or [])
        ]
        return permissions, list(raw.keys())

    if isinstance(raw, list):
        categories = response.get("categories")
        return (
            [_with_system_flag(item) for item in raw],
            list(categories) if isinstance(categories, list) else [],
        )

    return [], []


class PermissionsApi:
    """Wrapper for the permission catalogue endpoints."""

    def __init__(self, api: ApiClient) -> None:
        self.api = api

    async def get_permissions(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Tuple[List[Permission], List[str]]:
        """
        Fetch permissions, optionally filtered.

        Errors are logged and yield empty lists.
        """
        try:
            response = await self.api.request(
                "/permissions",
                "GET",
                params={"category": category or None, "search": search or None},
                token=token,
            )
        except BizDeskException as error:
            logger.error(
                "Error fetching permissions",
                extra={"extra_fields": {"error": error.message}},
            )
            return [], []

        permissions, categories = flatten_permissions_response(response)
        logger.debug(
            "Fetched permissions",
            extra={"extra_fields": {"count": len(permissions), "categories": len(categories)}},
        )
        return permissions, categories

    async def _mutate(self, action: str, path: str, method: str, payload: Optional[Dict[str, Any]]) -> Any:
        try:
            return await self.api.request(path, method, payload)
        except BizDeskException as error:
            raise ApiException(
                f"Failed to {action} permission: {error.message or 'Unknown error'}",
                status_code=getattr(error, "status_code", None),
            ) from error

    async def create_permission(self, payload: Dict[str, Any]) -> Permission:
        response = await self._mutate("create", "/permissions", "POST", payload)
        return _with_system_flag(response["permission"])

    async def update_permission(self, permission_id: str, payload: Dict[str, Any]) -> Permission:
        response = await self._mutate("update", f"/permissions/{permission_id}", "PUT", payload)
        return _with_system_flag(response["permission"])

    async def delete_permission(self, permission_id: str) -> None:
        await self._mutate("delete", f"/permissions/{permission_id}", "DELETE", None)
