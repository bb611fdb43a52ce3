"""
BizDesk Tests - Real-time Transport Tests.

Drives ``PusherClient`` against an in-memory websocket.
"""

import asyncio
import json
from typing import Any, List

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from bizdesk.exceptions import RealtimeException
from bizdesk.realtime import (SUBSCRIPTION_ERROR, SUBSCRIPTION_SUCCEEDED,
                              Channel, PusherClient,
                              company_conversations_channel,
                              conversation_channel, decode_payload)

HANDSHAKE = json.dumps(
    {
        "event": "pusher:connection_established",
        "data": json.dumps({"socket_id": "123.456", "activity_timeout": 120}),
    }
)


class FakeWebSocket:
    """Websocket double: frames are queued in, sent frames are recorded."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Any] = []
        self.closed = False

    async def recv(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def socket() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def auth_requests() -> List[httpx.Request]:
    return []


@pytest.fixture
def client(make_api, socket, auth_requests) -> PusherClient:
    def handler(request: httpx.Request) -> httpx.Response:
        auth_requests.append(request)
        return httpx.Response(200, json={"auth": "app-key:signature"})

    async def connector(url: str) -> FakeWebSocket:
        socket.url = url
        return socket

    return PusherClient(make_api(handler), auth_token="2|agent", app_key="app-key", connector=connector)


async def connected(client: PusherClient, socket: FakeWebSocket) -> PusherClient:
    socket.incoming.put_nowait(HANDSHAKE)
    await client.connect()
    return client


def test_channel_names() -> None:
    assert company_conversations_channel("3") == "private-company.3.conversations"
    assert conversation_channel("c-1") == "private-conversation.c-1"


def test_decode_payload() -> None:
    assert decode_payload('{"a": 1}') == {"a": 1}
    assert decode_payload("not json") == "not json"
    assert decode_payload({"a": 1}) == {"a": 1}


def test_cluster_url(make_api) -> None:
    client = PusherClient(make_api(lambda r: httpx.Response(200, json={})), app_key="k", cluster="eu")
    assert client.url == "wss://ws-eu.pusher.com:443/app/k?protocol=7&client=bizdesk-python&version=1.0.0"


def test_custom_host_url(make_api) -> None:
    client = PusherClient(
        make_api(lambda r: httpx.Response(200, json={})),
        app_key="k",
        host="soketi.local",
        port=6001,
        scheme="http",
    )
    assert client.url.startswith("ws://soketi.local:6001/app/k?")


def test_channel_unbind_variants() -> None:
    channel = Channel("private-x")
    first, second = (lambda d: None), (lambda d: None)
    channel.bind("a", first)
    channel.bind("a", second)
    channel.bind("b", first)

    channel.unbind("a", first)
    assert channel.bound_events() == ["a", "b"]
    channel.unbind("a")
    assert channel.bound_events() == ["b"]
    channel.unbind()
    assert channel.bound_events() == []
    assert channel.requires_auth is True
    assert Channel("public").requires_auth is False


@pytest.mark.asyncio
async def test_connect_reads_socket_id(client, socket) -> None:
    states = []
    client.bind_connection("connected", lambda: states.append("connected"))

    await connected(client, socket)

    assert client.is_connected
    assert client.socket_id == "123.456"
    assert states == ["connected"]
    assert "/app/app-key?protocol=7" in socket.url
    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_failure_raises_and_reports(make_api) -> None:
    errors = []

    async def refuse(url: str) -> Any:
        raise OSError("Connection refused")

    client = PusherClient(make_api(lambda r: httpx.Response(200, json={})), app_key="k", connector=refuse)
    client.bind_connection("error", errors.append)

    with pytest.raises(RealtimeException):
        await client.connect()

    assert client.state == "unavailable"
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_handshake_error_is_refused(client, socket) -> None:
    socket.incoming.put_nowait(json.dumps({"event": "pusher:error", "data": {"code": 4001, "message": "App key not in this cluster"}}))

    with pytest.raises(RealtimeException) as exc_info:
        await client.connect()

    assert "refused" in exc_info.value.message
    assert socket.closed


@pytest.mark.asyncio
async def test_subscribe_private_channel_sends_auth(client, socket, auth_requests) -> None:
    await connected(client, socket)

    await client.subscribe("private-conversation.c-1")

    assert socket.sent[-1] == {
        "event": "pusher:subscribe",
        "data": {"channel": "private-conversation.c-1", "auth": "app-key:signature"},
    }
    request = auth_requests[0]
    assert request.url.path == "/api/broadcasting/auth"
    assert request.headers["Authorization"] == "Bearer 2|agent"
    assert request.content == b"socket_id=123.456&channel_name=private-conversation.c-1"
    await client.disconnect()


@pytest.mark.asyncio
async def test_channels_subscribed_before_connect_are_sent_on_connect(client, socket) -> None:
    await client.subscribe("private-company.3.conversations")
    assert socket.sent == []

    await connected(client, socket)

    assert [frame["event"] for frame in socket.sent] == ["pusher:subscribe"]
    await client.disconnect()


@pytest.mark.asyncio
async def test_subscribe_twice_returns_same_channel(client, socket) -> None:
    await connected(client, socket)

    first = await client.subscribe("private-conversation.c-1")
    second = await client.subscribe("private-conversation.c-1")

    assert first is second
    assert len(socket.sent) == 1
    await client.disconnect()


@pytest.mark.asyncio
async def test_auth_failure_emits_subscription_error(make_api, socket) -> None:
    async def connector(url: str) -> FakeWebSocket:
        return socket

    api = make_api(lambda r: httpx.Response(403, json={"message": "Forbidden"}))
    client = PusherClient(api, auth_token="2|agent", app_key="k", connector=connector)
    errors = []
    channel = await client.subscribe("private-conversation.c-9")
    channel.bind(SUBSCRIPTION_ERROR, errors.append)

    await connected(client, socket)

    assert errors[0]["type"] == "AuthError"
    assert errors[0]["status"] == 403
    assert socket.sent == []
    await client.disconnect()


@pytest.mark.asyncio
async def test_ping_is_answered_with_pong(client, socket) -> None:
    await connected(client, socket)

    await client.handle_frame(json.dumps({"event": "pusher:ping", "data": {}}))

    assert socket.sent[-1] == {"event": "pusher:pong", "data": {}}
    await client.disconnect()


@pytest.mark.asyncio
async def test_internal_subscription_succeeded_is_renamed(client, socket) -> None:
    await connected(client, socket)
    channel = await client.subscribe("private-conversation.c-1")
    confirmations = []
    channel.bind(SUBSCRIPTION_SUCCEEDED, confirmations.append)

    await client.handle_frame(
        json.dumps(
            {
                "event": "pusher_internal:subscription_succeeded",
                "channel": "private-conversation.c-1",
                "data": "{}",
            }
        )
    )

    assert channel.subscribed is True
    assert confirmations == [{}]
    await client.disconnect()


@pytest.mark.asyncio
async def test_channel_events_are_decoded_and_dispatched(client, socket) -> None:
    await connected(client, socket)
    channel = await client.subscribe("private-company.3.conversations")
    received = []

    async def on_message(data: Any) -> None:
        received.append(data)

    channel.bind("message.received", on_message)

    await client.handle_frame(
        json.dumps(
            {
                "event": "message.received",
                "channel": "private-company.3.conversations",
                "data": json.dumps({"conversation_id": "c-1"}),
            }
        )
    )
    await client.handle_frame(
        json.dumps({"event": "message.received", "channel": "private-other", "data": "{}"})
    )

    assert received == [{"conversation_id": "c-1"}]
    await client.disconnect()


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_dispatch(client, socket) -> None:
    await connected(client, socket)
    channel = await client.subscribe("private-company.3.conversations")
    received = []

    def broken(data: Any) -> None:
        raise RuntimeError("handler bug")

    channel.bind("conversation.updated", broken)
    channel.bind("conversation.updated", received.append)

    await client.handle_frame(
        json.dumps(
            {
                "event": "conversation.updated",
                "channel": "private-company.3.conversations",
                "data": {"conversation": {"id": "c-1"}},
            }
        )
    )

    assert received == [{"conversation": {"id": "c-1"}}]
    await client.disconnect()


@pytest.mark.asyncio
async def test_malformed_frames_are_ignored(client, socket) -> None:
    await connected(client, socket)
    await client.handle_frame("{not json")
    await client.handle_frame(b"[1, 2]")
    assert client.is_connected
    await client.disconnect()


@pytest.mark.asyncio
async def test_read_loop_failure_marks_disconnected(client, socket) -> None:
    await connected(client, socket)
    channel = await client.subscribe("private-company.3.conversations")
    channel.subscribed = True

    disconnected = asyncio.Event()
    errors = []
    client.bind_connection("disconnected", disconnected.set)
    client.bind_connection("error", errors.append)

    socket.incoming.put_nowait(RuntimeError("socket broke"))
    await asyncio.wait_for(disconnected.wait(), timeout=1)

    assert client.state == "disconnected"
    assert errors == ["socket broke"]
    assert channel.subscribed is False
    assert "private-company.3.conversations" in client.channels


@pytest.mark.asyncio
async def test_unsubscribe_and_disconnect(client, socket) -> None:
    await connected(client, socket)
    await client.subscribe("private-conversation.c-1")

    await client.unsubscribe("private-conversation.c-1")
    assert socket.sent[-1] == {
        "event": "pusher:unsubscribe",
        "data": {"channel": "private-conversation.c-1"},
    }

    await client.disconnect()
    assert client.state == "disconnected"
    assert client.channels == {}
    assert socket.closed


class ClosingWebSocket(FakeWebSocket):
    """Websocket whose peer went away right after the handshake."""

    async def send(self, data: str) -> None:
        raise ConnectionClosedError(None, None)


@pytest.mark.asyncio
async def test_send_failure_while_subscribing_fails_connect(make_api) -> None:
    socket = ClosingWebSocket()
    states: List[str] = []

    async def connector(url: str) -> FakeWebSocket:
        return socket

    client = PusherClient(
        make_api(lambda r: httpx.Response(200, json={"auth": "app-key:signature"})),
        auth_token="2|agent",
        app_key="app-key",
        connector=connector,
    )
    client.bind_connection("unavailable", lambda *args: states.append("unavailable"))
    await client.subscribe("private-company.3.conversations")
    socket.incoming.put_nowait(HANDSHAKE)

    with pytest.raises(RealtimeException) as exc_info:
        await client.connect()

    assert "Connection lost while subscribing" in exc_info.value.message
    assert client.is_connected is False
    assert client.state == "unavailable"
    assert socket.closed is True
    assert states == ["unavailable"]
    assert "private-company.3.conversations" in client.channels


@pytest.mark.asyncio
async def test_send_failure_raises_realtime_exception(client, socket) -> None:
    await connected(client, socket)

    async def broken_send(data: str) -> None:
        raise ConnectionClosedError(None, None)

    socket.send = broken_send

    with pytest.raises(RealtimeException):
        await client.subscribe("public-updates")

    await client.disconnect()
