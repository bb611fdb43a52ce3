"""
BizDesk Tests - Chat Sync Worker Tests.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from bizdesk.exceptions import RealtimeException
from bizdesk.realtime import Channel
from bizdesk.worker import ChatSyncWorker


class FlakyTransport:
    """Transport whose first ``failures`` connection attempts raise ``error``."""

    def __init__(self, failures: int = 0, error: Optional[Exception] = None) -> None:
        self.failures = failures
        self.error = error or RealtimeException("Could not connect to real-time server")
        self.attempts = 0
        self.is_connected = False
        self.connected = asyncio.Event()
        self.channels: Dict[str, Channel] = {}
        self.handlers: Dict[str, List[Any]] = {}

    async def connect(self) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        self.is_connected = True
        self.connected.set()

    async def disconnect(self) -> None:
        self.is_connected = False
        self.channels.clear()

    def bind_connection(self, event: str, handler: Any) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def unbind_connection(self, event: str, handler: Any = None) -> None:
        self.handlers.pop(event, None)

    async def subscribe(self, channel_name: str) -> Channel:
        return self.channels.setdefault(channel_name, Channel(channel_name))

    async def unsubscribe(self, channel_name: str) -> None:
        self.channels.pop(channel_name, None)


@pytest.fixture
def api(make_api, conversation_data):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer 9|service"
        return httpx.Response(200, json={"status": "success", "conversations": [conversation_data]})

    return make_api(handler, token=None)


def worker_with(api, transport: FlakyTransport, **kwargs: Any) -> ChatSyncWorker:
    return ChatSyncWorker(
        api,
        company_id="3",
        token="9|service",
        transport_factory=lambda api, token: transport,
        check_interval=0.01,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_worker_disabled_without_credentials(api) -> None:
    worker = ChatSyncWorker(api, company_id="", token="")

    await worker.start()

    assert worker.enabled is False
    assert worker.running is False
    assert worker.snapshot() == {"enabled": False, "running": False}


@pytest.mark.asyncio
async def test_worker_loads_subscribes_and_connects(api) -> None:
    transport = FlakyTransport()
    worker = worker_with(api, transport)

    await worker.start()
    await asyncio.wait_for(transport.connected.wait(), timeout=1)

    assert "private-company.3.conversations" in transport.channels
    state = worker.snapshot()
    assert state["running"] is True
    assert state["company_id"] == "3"
    assert [c["id"] for c in state["conversations"]] == ["c-1"]

    await worker.stop()

    assert worker.running is False
    assert worker.task is None
    assert transport.is_connected is False
    assert transport.channels == {}


@pytest.mark.asyncio
async def test_worker_retries_failed_connections(api) -> None:
    transport = FlakyTransport(failures=2)
    worker = worker_with(api, transport)

    await worker.start()
    await asyncio.wait_for(transport.connected.wait(), timeout=1)
    await worker.stop()

    assert transport.attempts == 3


@pytest.mark.asyncio
async def test_worker_start_is_idempotent(api) -> None:
    created = []

    def factory(api, token):
        transport = FlakyTransport()
        created.append(transport)
        return transport

    worker = ChatSyncWorker(api, company_id="3", token="9|service", transport_factory=factory, check_interval=0.01)

    await worker.start()
    await worker.start()
    await worker.stop()

    assert len(created) == 1


@pytest.mark.asyncio
async def test_worker_survives_unexpected_connect_errors(api) -> None:
    transport = FlakyTransport(failures=1, error=ConnectionResetError("Connection reset by peer"))
    worker = worker_with(api, transport)

    await worker.start()
    await asyncio.wait_for(transport.connected.wait(), timeout=1)

    assert worker.running is True
    assert not worker.task.done()
    await worker.stop()
    assert transport.attempts == 2


class BrokenSubscribeTransport(FlakyTransport):
    async def subscribe(self, channel_name: str) -> Channel:
        raise RuntimeError("subscribe failed")


@pytest.mark.asyncio
async def test_worker_reports_stopped_when_task_dies(api) -> None:
    worker = worker_with(api, BrokenSubscribeTransport())

    await worker.start()
    await asyncio.wait([worker.task], timeout=1)
    await asyncio.sleep(0)

    assert worker.running is False
    assert worker.snapshot()["running"] is False

    await worker.stop()
    assert worker.task is None
