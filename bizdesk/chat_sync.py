"""
Real-time chat synchronization.

``RealTimeChat`` keeps an in-memory view of a company's conversations and
the active conversation's messages in step with push events:

- ``message.received``: a customer wrote in
- ``message.sent``: another agent replied
- ``conversation.updated``: status or assignment changed
- ``message.status.updated``: delivery or read receipt

Events are applied as they arrive (last event wins). A conversation that is
not held locally is fetched once in the background. Nothing is replayed
after a reconnect beyond ``load_conversations``.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from pydantic import ValidationError

from .chat_api import ChatApi
from .exceptions import BizDeskException
from .logging_config import get_logger
from .models import (Conversation, ConversationUpdatedEvent, Message,
                     MessageReceivedEvent, MessageSentEvent,
                     MessageStatusUpdatedEvent)
from .notifications import Notifier, safe_notify
from .realtime import (Channel, company_conversations_channel,
                       conversation_channel)

logger = get_logger(__name__)

MESSAGE_RECEIVED = "message.received"
MESSAGE_SENT = "message.sent"
CONVERSATION_UPDATED = "conversation.updated"
MESSAGE_STATUS_UPDATED = "message.status.updated"


class Transport(Protocol):
    """What the chat layer needs from a real-time transport."""

    is_connected: bool

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def bind_connection(self, event: str, handler: Any) -> None: ...

    def unbind_connection(self, event: str, handler: Any = None) -> None: ...

    async def subscribe(self, channel_name: str) -> Channel: ...

    async def unsubscribe(self, channel_name: str) -> None: ...


def extract_conversation_list(response: Any) -> List[Dict[str, Any]]:
    """
    Pull the conversation records out of a list response.

    Accepts a bare list, ``{"conversations": [...]}``, ``{"data": [...]}``
    and Laravel pagination (``{"conversations": {"data": [...]}}``).
    """
    if isinstance(response, list):
        return response
    if not isinstance(response, Mapping):
        return []

    for key in ("conversations", "data"):
        value = response.get(key)
        if isinstance(value, list):
            return value
        if isinstance(value, Mapping) and isinstance(value.get("data"), list):
            return value["data"]
    return []


def extract_last_page(response: Any) -> Optional[int]:
    """``last_page`` of a paginated list response, or None when it has none."""
    if not isinstance(response, Mapping):
        return None

    for holder in (response, response.get("meta"), response.get("conversations"), response.get("data")):
        if isinstance(holder, Mapping):
            last_page = holder.get("last_page")
            if isinstance(last_page, int) and not isinstance(last_page, bool):
                return last_page
    return None


class RealTimeChat:
    """
    Live conversations and messages for one company.

    Attributes:
        company_id: Company whose conversation channel is followed
        conversation_id: Conversation currently open, if any
        messages: Messages of the active conversation, oldest first
        conversations: Conversations, most recently active first
        unread_counts: Unread message count per conversation id
        is_connected: Mirrors the transport connection state
    """

    def __init__(
        self,
        transport: Transport,
        chat_api: ChatApi,
        company_id: str,
        conversation_id: Optional[str] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.transport = transport
        self.chat_api = chat_api
        self.company_id = str(company_id)
        self.conversation_id = str(conversation_id) if conversation_id else None
        self.notifier = notifier

        self.messages: List[Message] = []
        self.conversations: List[Conversation] = []
        self.unread_counts: Dict[str, int] = {}
        self.is_connected = bool(getattr(transport, "is_connected", False))

        self._running = False
        self._conversation_channel_name: Optional[str] = None
        self._pending_fetches: Set[str] = set()
        self._fetch_tasks: Set[asyncio.Task] = set()

    @property
    def company_channel_name(self) -> str:
        return company_conversations_channel(self.company_id)

    # Lifecycle

    async def start(self) -> None:
        """Subscribe to the company channel and, if set, the active conversation."""
        if self._running:
            return
        self._running = True

        self.transport.bind_connection("connected", self._on_connected)
        self.transport.bind_connection("disconnected", self._on_disconnected)
        self.transport.bind_connection("error", self._on_connection_error)

        channel = await self.transport.subscribe(self.company_channel_name)
        channel.bind(MESSAGE_RECEIVED, self._on_message_received)
        channel.bind(MESSAGE_SENT, self._on_message_sent)
        channel.bind(CONVERSATION_UPDATED, self._on_conversation_updated)
        channel.bind("pusher:subscription_error", self._on_subscription_error)

        if self.conversation_id:
            await self._subscribe_conversation(self.conversation_id)

        logger.info(
            "Real-time chat started",
            extra={
                "extra_fields": {
                    "company_id": self.company_id,
                    "conversation_id": self.conversation_id,
                }
            },
        )

    async def stop(self) -> None:
        """Tear down both subscriptions and any pending fetches."""
        if not self._running:
            return
        self._running = False

        await self.transport.unsubscribe(self.company_channel_name)
        if self._conversation_channel_name:
            await self.transport.unsubscribe(self._conversation_channel_name)
            self._conversation_channel_name = None

        self.transport.unbind_connection("connected", self._on_connected)
        self.transport.unbind_connection("disconnected", self._on_disconnected)
        self.transport.unbind_connection("error", self._on_connection_error)

        for task in list(self._fetch_tasks):
            task.cancel()
        self._fetch_tasks.clear()
        self._pending_fetches.clear()

        logger.info("Real-time chat stopped", extra={"extra_fields": {"company_id": self.company_id}})

    async def set_active_conversation(self, conversation_id: Optional[str]) -> None:
        """
        Switch the open conversation.

        The previous conversation channel is dropped and the message list
        cleared; callers load the new conversation's history with
        ``set_messages``.
        """
        new_id = str(conversation_id) if conversation_id else None
        if new_id == self.conversation_id:
            return

        if self._conversation_channel_name:
            await self.transport.unsubscribe(self._conversation_channel_name)
            self._conversation_channel_name = None

        self.conversation_id = new_id
        self.messages = []

        if new_id and self._running:
            await self._subscribe_conversation(new_id)

    async def _subscribe_conversation(self, conversation_id: str) -> None:
        name = conversation_channel(conversation_id)
        channel = await self.transport.subscribe(name)
        channel.bind(MESSAGE_STATUS_UPDATED, self._on_message_status_updated)
        channel.bind("pusher:subscription_error", self._on_subscription_error)
        self._conversation_channel_name = name

    async def wait_for_pending(self) -> None:
        """Wait until background conversation fetches have finished."""
        while self._fetch_tasks:
            tasks = list(self._fetch_tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._fetch_tasks.difference_update(tasks)

    # Connection state

    def _on_connected(self) -> None:
        self.is_connected = True

    def _on_disconnected(self) -> None:
        self.is_connected = False

    def _on_connection_error(self, error: Any = None) -> None:
        logger.error(f"Real-time connection error: {error}")
        self.is_connected = False

    def _on_subscription_error(self, error: Any) -> None:
        logger.error(f"Real-time subscription error: {error}")

    # Event handlers

    def _index_of(self, conversation_id: str) -> int:
        for index, conversation in enumerate(self.conversations):
            if conversation.id == conversation_id:
                return index
        return -1

    def _move_to_front(self, index: int, conversation: Conversation) -> None:
        del self.conversations[index]
        self.conversations.insert(0, conversation)

    def _append_unique(self, message: Message) -> bool:
        if any(existing.id == message.id for existing in self.messages):
            return False
        self.messages.append(message)
        return True

    async def _on_message_received(self, data: Any) -> None:
        try:
            event = MessageReceivedEvent.model_validate(data)
        except ValidationError as error:
            logger.warning(f"Ignoring malformed {MESSAGE_RECEIVED} event: {error.error_count()} errors")
            return

        conversation_id = event.conversation_id
        summary = event.conversation
        message = event.message

        index = self._index_of(conversation_id)
        if index >= 0:
            fields: Dict[str, Any] = {
                "last_message_at": summary.last_message_at,
                "last_customer_message_at": summary.last_customer_message_at,
                "unread_count": summary.unread_count,
            }
            fields = {k: v for k, v in fields.items() if v is not None}
            fields["latest_message"] = message.model_dump()
            fields["last_message"] = message.content
            self._move_to_front(index, self.conversations[index].merged(fields))
        else:
            self._schedule_fetch(conversation_id)

        if summary.unread_count is not None:
            self.unread_counts[conversation_id] = summary.unread_count

        if conversation_id == self.conversation_id:
            self._append_unique(message)
            self.unread_counts[conversation_id] = 0
        elif self.notifier is not None:
            await safe_notify(self.notifier, message)

    async def _on_message_sent(self, data: Any) -> None:
        try:
            event = MessageSentEvent.model_validate(data)
        except ValidationError as error:
            logger.warning(f"Ignoring malformed {MESSAGE_SENT} event: {error.error_count()} errors")
            return

        conversation_id = event.conversation_id
        message = event.message
        is_active = conversation_id == self.conversation_id

        index = self._index_of(conversation_id)
        if index >= 0:
            fields: Dict[str, Any] = {
                "latest_message": message.model_dump(),
                "last_message": message.content,
            }
            if event.conversation.last_message_at is not None:
                fields["last_message_at"] = event.conversation.last_message_at
            updated = self.conversations[index].merged(fields)
            if is_active:
                self.conversations[index] = updated
            else:
                self._move_to_front(index, updated)

        if is_active:
            self._append_unique(message)

    async def _on_conversation_updated(self, data: Any) -> None:
        try:
            event = ConversationUpdatedEvent.model_validate(data)
        except ValidationError as error:
            logger.warning(f"Ignoring malformed {CONVERSATION_UPDATED} event: {error.error_count()} errors")
            return

        conversation_id = event.conversation.get("id")
        if conversation_id is None:
            return

        index = self._index_of(str(conversation_id))
        if index < 0:
            return

        fields = dict(event.conversation)
        fields["id"] = str(conversation_id)
        try:
            self.conversations[index] = self.conversations[index].merged(fields)
        except ValidationError as error:
            logger.warning(f"Could not apply conversation update: {error.error_count()} errors")

    async def _on_message_status_updated(self, data: Any) -> None:
        try:
            event = MessageStatusUpdatedEvent.model_validate(data)
        except ValidationError as error:
            logger.warning(f"Ignoring malformed {MESSAGE_STATUS_UPDATED} event: {error.error_count()} errors")
            return

        self._apply_status(event.message_id, event.new_status, event.delivered_at, event.read_at)

    def _apply_status(
        self,
        message_id: str,
        status: str,
        delivered_at: Optional[str] = None,
        read_at: Optional[str] = None,
    ) -> bool:
        updates: Dict[str, Any] = {"status": status}
        if delivered_at is not None:
            updates["delivered_at"] = delivered_at
        if read_at is not None:
            updates["read_at"] = read_at

        found = False
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                self.messages[index] = message.model_copy(update=updates)
                found = True
        return found

    # Conversation details

    def _schedule_fetch(self, conversation_id: str) -> None:
        if conversation_id in self._pending_fetches:
            return
        self._pending_fetches.add(conversation_id)

        task = asyncio.create_task(self._fetch_conversation(conversation_id))
        self._fetch_tasks.add(task)
        task.add_done_callback(self._fetch_tasks.discard)

    async def _fetch_conversation(self, conversation_id: str) -> None:
        try:
            response = await self.chat_api.get_conversation(conversation_id)
        except BizDeskException as error:
            logger.error(
                "Failed to fetch conversation details",
                extra={"extra_fields": {"conversation_id": conversation_id, "error": error.message}},
            )
            return
        finally:
            self._pending_fetches.discard(conversation_id)

        if not isinstance(response, Mapping) or response.get("status") != "success":
            return

        try:
            conversation = Conversation.model_validate(response.get("conversation"))
        except ValidationError as error:
            logger.warning(f"Conversation {conversation_id} details were malformed: {error.error_count()} errors")
            return

        if self._index_of(conversation.id) < 0:
            self.conversations.insert(0, conversation)

    async def load_conversations(self, params: Optional[Mapping[str, Any]] = None) -> List[Conversation]:
        """
        Initial fetch of the conversation list.

        Errors are logged and leave the current list untouched.
        """
        try:
            response = await self.chat_api.get_conversations(params)
        except BizDeskException as error:
            logger.error(
                "Failed to load conversations",
                extra={"extra_fields": {"company_id": self.company_id, "error": error.message}},
            )
            return self.conversations

        conversations: List[Conversation] = []
        for raw in extract_conversation_list(response):
            try:
                conversations.append(Conversation.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed conversation record")

        self.set_conversations(conversations)
        return self.conversations

    # Local mutations

    def add_message(self, message: Message) -> bool:
        """Append a message unless one with the same id is already present."""
        return self._append_unique(message)

    def remove_message(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    def update_message_status(self, message_id: str, status: str) -> bool:
        return self._apply_status(message_id, status)

    def set_messages(self, messages: List[Message]) -> None:
        self.messages = list(messages)

    def set_conversations(self, conversations: List[Conversation]) -> None:
        self.conversations = list(conversations)
        for conversation in self.conversations:
            self.unread_counts[conversation.id] = conversation.unread_count

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view of the live state."""
        return {
            "company_id": self.company_id,
            "conversation_id": self.conversation_id,
            "is_connected": self.is_connected,
            "conversations": [c.model_dump() for c in self.conversations],
            "messages": [m.model_dump() for m in self.messages],
            "unread_counts": dict(self.unread_counts),
        }
