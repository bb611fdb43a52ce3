"""
BizDesk Tests - Test Configuration.

Provides pytest fixtures for users with given permissions, API clients
backed by ``httpx.MockTransport`` and sample chat records.
"""

import os

os.environ.setdefault("API_URL", "http://test-api:8000/api")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("CHAT_SYNC_ENABLED", "false")

from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from bizdesk.api_client import ApiClient
from bizdesk.models import UserProfile
from bizdesk.session import TokenStore

API_URL = "http://test-api:8000/api"


def build_user(
    permissions: Iterable[str] = (),
    role: Optional[str] = "agent",
    inactive: Iterable[str] = (),
    user_id: str = "7",
    company_id: str = "3",
) -> UserProfile:
    """A user whose role carries ``permissions`` (and ``inactive`` ones switched off)."""
    perms: List[Dict[str, Any]] = [
        {"key": key, "name": key, "category": "General"} for key in permissions
    ]
    perms += [
        {"key": key, "name": key, "category": "General", "is_active": False}
        for key in inactive
    ]
    data: Dict[str, Any] = {
        "id": user_id,
        "email": "agent@example.com",
        "first_name": "Ada",
        "last_name": "Agent",
        "company": {"id": company_id, "name": "Acme"},
        "role": {"name": role, "permissions": perms} if role else None,
    }
    return UserProfile.model_validate(data)


@pytest.fixture
def make_user() -> Callable[..., UserProfile]:
    return build_user


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


@pytest.fixture
def make_api() -> Callable[..., ApiClient]:
    """
    Factory for an ``ApiClient`` answering through ``handler``.

    A valid token is stored unless ``token`` is None.
    """

    def factory(
        handler: Callable[[httpx.Request], httpx.Response],
        token: Optional[str] = "1|sanctum-token",
        max_retries: int = 3,
    ) -> ApiClient:
        store = TokenStore()
        if token:
            store.store(token)
        return ApiClient(
            base_url=API_URL,
            token_store=store,
            max_retries=max_retries,
            retry_delay=0,
            transport=httpx.MockTransport(handler),
        )

    return factory


@pytest.fixture
def message_data() -> Dict[str, Any]:
    return {
        "id": "m-1",
        "content": "Hello, is my order ready?",
        "direction": "inbound",
        "sender_type": "customer",
        "sender_name": "Grace",
        "message_type": "text",
        "created_at": "2024-05-01T10:00:00Z",
        "status": "delivered",
    }


@pytest.fixture
def conversation_data() -> Dict[str, Any]:
    return {
        "id": "c-1",
        "customer_name": "Grace",
        "customer_phone": "+15550001",
        "last_message": "Earlier message",
        "last_message_at": "2024-05-01T09:00:00Z",
        "unread_count": 1,
        "status": "open",
        "created_at": "2024-04-30T08:00:00Z",
        "updated_at": "2024-05-01T09:00:00Z",
    }
