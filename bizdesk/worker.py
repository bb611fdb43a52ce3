import asyncio
from typing import Any, Callable, Dict, Optional

from .api_client import ApiClient
from .chat_api import ChatApi
from .chat_sync import RealTimeChat, Transport
from .config import settings
from .exceptions import RealtimeException
from .logging_config import get_logger
from .notifications import LoggingNotifier, Notifier
from .realtime import PusherClient

logger = get_logger(__name__)

TransportFactory = Callable[[ApiClient, str], Transport]


def _pusher_transport(api: ApiClient, token: str) -> Transport:
    return PusherClient(api, auth_token=token)


class ChatSyncWorker:
    """Background worker keeping a company's chat state live inside the BFF."""

    def __init__(
        self,
        api: ApiClient,
        company_id: Optional[str] = None,
        token: Optional[str] = None,
        notifier: Optional[Notifier] = None,
        transport_factory: TransportFactory = _pusher_transport,
        check_interval: float = 30.0,
    ):
        self.api = api
        self.company_id = company_id if company_id is not None else settings.CHAT_SYNC_COMPANY_ID
        self.token = token if token is not None else settings.CHAT_SYNC_TOKEN
        self.notifier = notifier or LoggingNotifier()
        self.transport_factory = transport_factory
        self.check_interval = check_interval

        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.transport: Optional[Transport] = None
        self.chat: Optional[RealTimeChat] = None

    @property
    def enabled(self) -> bool:
        return bool(self.company_id and self.token)

    async def start(self):
        """Start the chat sync worker."""
        if self.running:
            logger.warning("Chat sync worker already running")
            return
        if not self.enabled:
            logger.warning("Chat sync worker not started: company id or token missing")
            return

        self.transport = self.transport_factory(self.api, self.token)
        self.chat = RealTimeChat(
            self.transport,
            ChatApi(self.api, token=self.token),
            self.company_id,
            notifier=self.notifier,
        )

        self.running = True
        self.task = asyncio.create_task(self._run())
        self.task.add_done_callback(self._on_task_done)
        logger.info(
            "Chat sync worker started",
            extra={"extra_fields": {"company_id": self.company_id}},
        )

    async def stop(self):
        """Stop the chat sync worker."""
        self.running = False
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None

        if self.chat is not None:
            await self.chat.stop()
        if self.transport is not None:
            await self.transport.disconnect()

        logger.info("Chat sync worker stopped")

    async def _run(self):
        """Load conversations, subscribe, then keep the connection up."""
        await self.chat.load_conversations()
        await self.chat.start()

        while self.running:
            try:
                if not self.transport.is_connected:
                    await self.transport.connect()
                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                break
            except RealtimeException as e:
                logger.error(f"Chat sync connection failed: {e.message}")
                await asyncio.sleep(self.check_interval)
            except Exception as e:
                logger.error(
                    "Error in chat sync worker loop",
                    extra={"extra_fields": {"error_type": type(e).__name__, "error": str(e)}},
                )
                await asyncio.sleep(self.check_interval)

    def _on_task_done(self, task: asyncio.Task) -> None:
        # A finished task means nothing keeps the connection up any more
        self.running = False
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Chat sync worker stopped unexpectedly",
                extra={"extra_fields": {"error": str(task.exception())}},
            )

    def snapshot(self) -> Dict[str, Any]:
        """Current live chat state, or just the worker status when idle."""
        state: Dict[str, Any] = {"enabled": self.enabled, "running": self.running}
        if self.chat is not None:
            state.update(self.chat.snapshot())
        return state
