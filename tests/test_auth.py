"""
BizDesk Tests - Authentication Tests.
"""

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from bizdesk.auth import AuthService
from bizdesk.exceptions import ApiException


def user_payload(permissions=("can_view_conversations",)) -> Dict[str, Any]:
    return {
        "id": 7,
        "email": "agent@example.com",
        "first_name": "Ada",
        "last_name": "Agent",
        "company": {"id": 3, "name": "Acme"},
        "role": {"name": "agent", "permissions": [{"key": k} for k in permissions]},
    }


@pytest.mark.asyncio
async def test_sign_in_stores_token_and_user(make_api) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"status": "success", "data": {"token": "5|fresh", "user": user_payload()}},
        )

    auth = AuthService(make_api(handler, token=None))
    user = await auth.sign_in("agent@example.com", "secret")

    assert user.id == "7"
    assert user.company_id == "3"
    assert auth.tokens.get_valid_token() == "5|fresh"
    assert auth.permissions.has_permission("can_view_conversations") is True
    assert seen[0].url.path == "/api/login"
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_sign_in_failure_raises(make_api) -> None:
    api = make_api(
        lambda request: httpx.Response(401, json={"status": "failed", "message": "Invalid credentials"}),
        token=None,
    )
    auth = AuthService(api)

    with pytest.raises(ApiException) as exc_info:
        await auth.sign_in("agent@example.com", "wrong")

    assert exc_info.value.message == "Invalid credentials"
    assert auth.user is None


@pytest.mark.asyncio
async def test_sign_up_sends_confirmation(make_api) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201, json={"status": "success", "data": {"token": "6|new", "user": user_payload()}}
        )

    auth = AuthService(make_api(handler, token=None))
    await auth.sign_up("new@example.com", "pw123456", "New", "User", "NewCo")

    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/api/register"
    assert body["password_confirmation"] == "pw123456"
    assert body["company_name"] == "NewCo"


@pytest.mark.asyncio
async def test_sign_out_clears_session(make_api) -> None:
    api = make_api(
        lambda request: httpx.Response(
            200, json={"status": "success", "data": {"token": "5|fresh", "user": user_payload()}}
        ),
        token=None,
    )
    auth = AuthService(api)
    await auth.sign_in("agent@example.com", "secret")

    auth.sign_out()

    assert auth.user is None
    assert auth.tokens.get_token() is None
    assert auth.permissions.has_permission("can_logout") is False


@pytest.mark.asyncio
async def test_refresh_profile_stores_fresh_permissions(make_api) -> None:
    responses = iter(
        [
            {"status": "success", "data": {"token": "5|fresh", "user": user_payload()}},
            {"status": "success", "data": {"user": user_payload(["can_send_messages"])}},
        ]
    )
    api = make_api(lambda request: httpx.Response(200, json=next(responses)), token=None)
    auth = AuthService(api)
    await auth.sign_in("agent@example.com", "secret")

    user = await auth.refresh_profile()

    assert auth.permissions.has_permission("can_send_messages") is True
    assert auth.session.permission_cache.get_permission_keys(user.id) == ["can_send_messages"]


@pytest.mark.asyncio
async def test_refresh_profile_failure_keeps_cached_profile(make_api) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(
                200, json={"status": "success", "data": {"token": "5|fresh", "user": user_payload()}}
            )
        raise httpx.ConnectError("down", request=request)

    auth = AuthService(make_api(handler, token=None))
    await auth.sign_in("agent@example.com", "secret")

    user = await auth.refresh_profile()

    assert user is not None
    assert user.id == "7"


@pytest.mark.asyncio
async def test_refresh_token_is_single_flight(make_api) -> None:
    calls = []

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/api/login":
            return httpx.Response(
                200, json={"status": "success", "data": {"token": "5|fresh", "user": user_payload()}}
            )
        await asyncio.sleep(0.01)
        return httpx.Response(
            200, json={"status": "success", "data": {"user": user_payload(), "token": "8|rotated"}}
        )

    auth = AuthService(make_api(slow_handler, token=None))
    await auth.sign_in("agent@example.com", "secret")

    first, second = await asyncio.gather(auth.refresh_token(), auth.refresh_token())

    assert first == second == "8|rotated"
    assert calls.count("/api/users/7") == 1
    assert auth.tokens.get_token() == "8|rotated"


@pytest.mark.asyncio
async def test_refresh_token_keeps_current_token_on_error(make_api) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/login":
            return httpx.Response(
                200, json={"status": "success", "data": {"token": "5|fresh", "user": user_payload()}}
            )
        return httpx.Response(503, json={"message": "Maintenance"})

    auth = AuthService(make_api(handler, token=None))
    await auth.sign_in("agent@example.com", "secret")

    assert await auth.refresh_token() == "5|fresh"


@pytest.mark.asyncio
async def test_refresh_if_due_returns_valid_token(make_api) -> None:
    api = make_api(
        lambda request: httpx.Response(
            200, json={"status": "success", "data": {"token": "5|fresh", "user": user_payload()}}
        ),
        token=None,
    )
    auth = AuthService(api)
    await auth.sign_in("agent@example.com", "secret")

    # Opaque tokens default to a 7 day lifetime, far outside the refresh window
    assert await auth.refresh_if_due() == "5|fresh"
