"""
BizDesk Tests - Permission Catalogue Tests.
"""

import json

import httpx
import pytest

from bizdesk.exceptions import ApiException
from bizdesk.permissions_api import PermissionsApi, flatten_permissions_response

GROUPED = {
    "permissions": {
        "Chat": [
            {"id": 1, "key": "can_view_conversations", "category": "Chat", "is_system": True},
            {"id": 2, "key": "can_send_messages", "category": "Chat"},
        ],
        "Invoices": [{"id": 3, "key": "can_view_invoices", "category": "Invoices"}],
    }
}


def test_flatten_grouped_response() -> None:
    permissions, categories = flatten_permissions_response(GROUPED)

    assert [p.key for p in permissions] == [
        "can_view_conversations",
        "can_send_messages",
        "can_view_invoices",
    ]
    assert categories == ["Chat", "Invoices"]
    assert permissions[0].is_system_permission is True
    assert permissions[1].is_system_permission is False


def test_flatten_flat_response() -> None:
    permissions, categories = flatten_permissions_response(
        {"permissions": [{"key": "can_view_invoices"}], "categories": ["Invoices"]}
    )
    assert [p.key for p in permissions] == ["can_view_invoices"]
    assert categories == ["Invoices"]


def test_flatten_unexpected_shapes() -> None:
    assert flatten_permissions_response(None) == ([], [])
    assert flatten_permissions_response({"permissions": "nope"}) == ([], [])


@pytest.mark.asyncio
async def test_get_permissions_passes_filters(make_api) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=GROUPED)

    permissions, categories = await PermissionsApi(make_api(handler)).get_permissions(category="Chat")

    assert len(permissions) == 3
    assert seen[0].url.params["category"] == "Chat"
    assert "search" not in seen[0].url.params


@pytest.mark.asyncio
async def test_get_permissions_errors_yield_empty_lists(make_api) -> None:
    api = make_api(lambda request: httpx.Response(403, json={"message": "Forbidden"}))
    assert await PermissionsApi(api).get_permissions() == ([], [])


@pytest.mark.asyncio
async def test_create_permission(make_api) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={"status": "success", "permission": {"id": 9, "key": "can_export", "is_system": False}},
        )

    permission = await PermissionsApi(make_api(handler)).create_permission({"key": "can_export"})

    assert permission.id == "9"
    assert permission.is_system_permission is False
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"key": "can_export"}


@pytest.mark.asyncio
async def test_mutation_failures_are_wrapped(make_api) -> None:
    api = make_api(lambda request: httpx.Response(404, json={"message": "Not found"}))

    with pytest.raises(ApiException) as exc_info:
        await PermissionsApi(api).delete_permission("9")

    assert exc_info.value.message == "Failed to delete permission: Not found"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_update_permission_uses_put(make_api) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"permission": {"id": 9, "key": "can_export", "name": "Export"}})

    permission = await PermissionsApi(make_api(handler)).update_permission("9", {"name": "Export"})

    assert permission.name == "Export"
    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/api/permissions/9"
