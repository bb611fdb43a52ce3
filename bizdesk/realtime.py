"""
Real-time transport speaking the Pusher channels protocol (v7).

``PusherClient`` keeps one websocket to a Pusher (or Pusher-compatible)
server, authorizes private and presence channels against the backend's
broadcast auth endpoint and dispatches channel events to bound handlers.
Handler failures are logged and never reach the read loop.
"""

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .api_client import ApiClient
from .config import settings
from .exceptions import BizDeskException, RealtimeException
from .logging_config import get_logger
from .metrics import track_realtime_event, update_realtime_connected

logger = get_logger(__name__)

PROTOCOL_VERSION = 7
CLIENT_NAME = "bizdesk-python"
CLIENT_VERSION = "1.0.0"

SUBSCRIPTION_SUCCEEDED = "pusher:subscription_succeeded"
SUBSCRIPTION_ERROR = "pusher:subscription_error"

Handler = Callable[..., Any]
Connector = Callable[[str], Awaitable[Any]]


def company_conversations_channel(company_id: str) -> str:
    return f"private-company.{company_id}.conversations"


def conversation_channel(conversation_id: str) -> str:
    return f"private-conversation.{conversation_id}"


def decode_payload(data: Any) -> Any:
    """Pusher sends event data as a JSON string; decode it when it is one."""
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


async def _invoke(handler: Handler, *args: Any) -> None:
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(f"Error in real-time handler {getattr(handler, '__name__', handler)!r}")


class Channel:
    """
    A subscribed channel and its event handlers.

    Attributes:
        name: Channel name, e.g. ``private-conversation.42``
        subscribed: True once the server confirmed the subscription
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.subscribed = False
        self._handlers: Dict[str, List[Handler]] = {}

    @property
    def requires_auth(self) -> bool:
        return self.name.startswith("private-") or self.name.startswith("presence-")

    def bind(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def unbind(self, event: Optional[str] = None, handler: Optional[Handler] = None) -> None:
        """Remove one handler, every handler of an event, or all handlers."""
        if event is None:
            self._handlers.clear()
        elif handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def bound_events(self) -> List[str]:
        return [event for event, handlers in self._handlers.items() if handlers]

    async def emit(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            await _invoke(handler, data)


class PusherClient:
    """
    Websocket client for Pusher channels.

    Connection-state handlers (``connected``, ``disconnected``, ``error``)
    are registered with ``bind_connection``. Channels subscribed before
    ``connect()`` are sent to the server once the connection is established.
    There is no automatic reconnect; callers decide whether to connect again.
    """

    def __init__(
        self,
        api: ApiClient,
        auth_token: Optional[str] = None,
        app_key: Optional[str] = None,
        cluster: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        scheme: Optional[str] = None,
        auth_path: Optional[str] = None,
        connector: Optional[Connector] = None,
        handshake_timeout: float = 10.0,
    ) -> None:
        """
        Initialize the client.

        Args:
            api: Backend API client used for channel authorization
            auth_token: Bearer token for channel authorization
            app_key: Pusher application key (defaults to settings)
            cluster: Pusher cluster (defaults to settings)
            host: Custom websocket host (defaults to settings)
            port: Custom websocket port (defaults to settings, then 443/80)
            scheme: ``https`` or ``http`` for the custom host
            auth_path: Broadcast auth path on the API (defaults to settings)
            connector: Coroutine function opening the websocket
            handshake_timeout: Seconds to wait for ``connection_established``
        """
        self.api = api
        self.auth_token = auth_token
        self.app_key = app_key or settings.PUSHER_APP_KEY
        self.cluster = cluster or settings.PUSHER_APP_CLUSTER
        self.host = host or settings.PUSHER_HOST
        self.port = port or settings.PUSHER_PORT
        self.scheme = scheme or settings.PUSHER_SCHEME
        self.auth_path = auth_path or settings.BROADCAST_AUTH_PATH
        self.handshake_timeout = handshake_timeout
        self._connector = connector or websockets.connect

        self.state = "initialized"
        self.socket_id: Optional[str] = None
        self.channels: Dict[str, Channel] = {}
        self._connection_handlers: Dict[str, List[Handler]] = {}
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        query = f"protocol={PROTOCOL_VERSION}&client={CLIENT_NAME}&version={CLIENT_VERSION}"
        if self.host:
            secure = self.scheme == "https"
            ws_scheme = "wss" if secure else "ws"
            port = self.port or (443 if secure else 80)
            return f"{ws_scheme}://{self.host}:{port}/app/{self.app_key}?{query}"
        return f"wss://ws-{self.cluster}.pusher.com:443/app/{self.app_key}?{query}"

    @property
    def is_connected(self) -> bool:
        return self.state == "connected"

    # Connection state

    def bind_connection(self, event: str, handler: Handler) -> None:
        self._connection_handlers.setdefault(event, []).append(handler)

    def unbind_connection(self, event: str, handler: Optional[Handler] = None) -> None:
        if handler is None:
            self._connection_handlers.pop(event, None)
        elif handler in self._connection_handlers.get(event, []):
            self._connection_handlers[event].remove(handler)

    async def _emit_connection(self, event: str, *args: Any) -> None:
        for handler in list(self._connection_handlers.get(event, [])):
            await _invoke(handler, *args)

    async def _set_state(self, state: str, *args: Any) -> None:
        self.state = state
        update_realtime_connected(state == "connected")
        await self._emit_connection(state, *args)

    async def connect(self) -> None:
        """
        Open the websocket and wait for the server handshake.

        Raises:
            RealtimeException: The connection or handshake failed
        """
        if self.state in ("connecting", "connected"):
            return

        self.state = "connecting"
        logger.info("Connecting to real-time server", extra={"extra_fields": {"url": self.url}})

        try:
            self._ws = await self._connector(self.url)
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self.handshake_timeout)
        except (OSError, asyncio.TimeoutError, ConnectionClosed, WebSocketException) as error:
            await self._fail(f"Could not connect to real-time server: {error}")

        message = self._parse_frame(raw)
        event = message.get("event")
        data = decode_payload(message.get("data"))

        if event == "pusher:error":
            await self._fail(f"Real-time server refused the connection: {data}")
        if event != "pusher:connection_established" or not isinstance(data, dict):
            await self._fail(f"Unexpected handshake from real-time server: {event}")

        self.socket_id = data.get("socket_id")
        await self._set_state("connected")
        logger.info(
            "Connected to real-time server",
            extra={"extra_fields": {"socket_id": self.socket_id}},
        )

        self._reader_task = asyncio.create_task(self._read_loop())

        try:
            for channel in list(self.channels.values()):
                await self._send_subscribe(channel)
        except RealtimeException as error:
            await self._stop_reader()
            await self._fail(f"Connection lost while subscribing: {error.message}")

    async def _fail(self, reason: str) -> None:
        logger.error(reason)
        await self._close_socket()
        await self._set_state("unavailable")
        await self._emit_connection("error", reason)
        raise RealtimeException(reason)

    async def disconnect(self) -> None:
        """Close the connection and forget every channel."""
        await self._stop_reader()
        await self._close_socket()
        self.channels.clear()
        self.socket_id = None

        if self.state != "disconnected":
            await self._set_state("disconnected")
            logger.info("Disconnected from real-time server")

    async def _stop_reader(self) -> None:
        if self._reader_task is None:
            return
        self._reader_task.cancel()
        try:
            await self._reader_task
        except asyncio.CancelledError:
            pass
        self._reader_task = None

    async def _close_socket(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except Exception as error:
            logger.debug(f"Error closing websocket: {error}")
        self._ws = None

    async def _send(self, event: str, data: Dict[str, Any]) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except (OSError, ConnectionClosed, WebSocketException) as error:
            raise RealtimeException(
                f"Could not send {event} to real-time server: {error}",
                details={"event": event},
            ) from error

    # Channels

    async def subscribe(self, channel_name: str) -> Channel:
        """
        Subscribe to a channel, returning it for event binding.

        Subscribing twice returns the existing channel.
        """
        channel = self.channels.get(channel_name)
        if channel is not None:
            return channel

        channel = Channel(channel_name)
        self.channels[channel_name] = channel
        logger.info(f"Subscribing to {channel_name}")

        if self.is_connected:
            await self._send_subscribe(channel)
        return channel

    async def unsubscribe(self, channel_name: str) -> None:
        channel = self.channels.pop(channel_name, None)
        if channel is None:
            return
        channel.unbind()
        logger.info(f"Unsubscribed from {channel_name}")
        if self.is_connected:
            await self._send("pusher:unsubscribe", {"channel": channel_name})

    def channel(self, channel_name: str) -> Optional[Channel]:
        return self.channels.get(channel_name)

    async def _send_subscribe(self, channel: Channel) -> None:
        payload: Dict[str, Any] = {"channel": channel.name}

        if channel.requires_auth:
            try:
                payload.update(await self.authorize(channel.name))
            except RealtimeException as error:
                logger.error(
                    "Channel authorization failed",
                    extra={"extra_fields": {"channel": channel.name, "error": error.message}},
                )
                await channel.emit(
                    SUBSCRIPTION_ERROR,
                    {"type": "AuthError", "error": error.message, **error.details},
                )
                return

        await self._send("pusher:subscribe", payload)

    async def authorize(self, channel_name: str) -> Dict[str, Any]:
        """
        Obtain the signature for a private or presence channel.

        Returns:
            ``{"auth": ...}`` plus ``channel_data`` for presence channels

        Raises:
            RealtimeException: Not connected, or the backend refused
        """
        if not self.socket_id:
            raise RealtimeException("Cannot authorize a channel before connecting")

        try:
            response = await self.api.request(
                self.auth_path,
                "POST",
                token=self.auth_token,
                form={"socket_id": self.socket_id, "channel_name": channel_name},
            )
        except BizDeskException as error:
            raise RealtimeException(
                f"Channel authorization failed: {error.message}",
                details={"status": getattr(error, "status_code", None)},
            ) from error

        if not isinstance(response, dict) or not response.get("auth"):
            raise RealtimeException(
                "Channel authorization response did not include a signature",
                details={"status": None},
            )

        auth = {"auth": response["auth"]}
        if response.get("channel_data") is not None:
            auth["channel_data"] = response["channel_data"]
        return auth

    # Incoming frames

    @staticmethod
    def _parse_frame(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed real-time frame: {str(raw)[:200]}")
            return {}
        return message if isinstance(message, dict) else {}

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._ws.recv()
                await self.handle_frame(raw)
        except ConnectionClosed as error:
            logger.warning(f"Real-time connection closed: {error}")
        except asyncio.CancelledError:
            raise
        except Exception as error:
            logger.error(f"Real-time read loop failed: {error}")
            await self._emit_connection("error", str(error))

        self._reader_task = None
        self._ws = None
        self.socket_id = None
        for channel in self.channels.values():
            channel.subscribed = False
        await self._set_state("disconnected")

    async def handle_frame(self, raw: Any) -> None:
        """Dispatch one frame received from the server."""
        message = self._parse_frame(raw)
        event = message.get("event")
        if not event:
            return

        data = decode_payload(message.get("data"))
        channel_name = message.get("channel")
        track_realtime_event(event)

        if event == "pusher:ping":
            await self._send("pusher:pong", {})
            return

        if event == "pusher:error":
            logger.warning(f"Real-time server error: {data}")
            await self._emit_connection("error", data)
            return

        if event == "pusher_internal:subscription_succeeded":
            event = SUBSCRIPTION_SUCCEEDED

        channel = self.channels.get(channel_name) if channel_name else None
        if channel is None:
            return

        if event == SUBSCRIPTION_SUCCEEDED:
            channel.subscribed = True
            logger.info(f"Subscribed to {channel.name}")

        logger.debug(
            "Real-time event",
            extra={"extra_fields": {"channel": channel.name, "event": event}},
        )
        await channel.emit(event, data)
