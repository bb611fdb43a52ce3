"""
Notifications for chat messages arriving outside the active conversation.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from .logging_config import get_logger
from .models import Message

logger = get_logger(__name__)


@dataclass
class MessageNotification:
    """What a desktop notification for a message shows."""

    title: str
    body: str
    tag: str
    require_interaction: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_message_notification(message: Message) -> MessageNotification:
    return MessageNotification(
        title=f"New message from {message.sender_name or 'Customer'}",
        body=message.content,
        tag=f"message-{message.id}",
    )


class Notifier(ABC):
    """Abstract base class for message notifiers."""

    @abstractmethod
    async def notify_new_message(self, message: Message) -> None:
        """
        Notify that a message arrived in a conversation nobody is viewing.

        Args:
            message: The received message
        """
        pass

    @abstractmethod
    def get_notifier_name(self) -> str:
        """Get the name of this notifier."""
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the log and keeps the most recent ones."""

    def __init__(self, history_size: int = 50) -> None:
        self.history_size = history_size
        self.history: List[MessageNotification] = []

    async def notify_new_message(self, message: Message) -> None:
        notification = build_message_notification(message)
        self.history.append(notification)
        del self.history[: -self.history_size]

        logger.info(
            notification.title,
            extra={"extra_fields": {"tag": notification.tag, "body": notification.body[:200]}},
        )

    def get_notifier_name(self) -> str:
        return "log"


async def safe_notify(notifier: Notifier, message: Message) -> None:
    """Deliver a notification, logging instead of raising on failure."""
    try:
        await notifier.notify_new_message(message)
    except Exception:
        logger.exception(
            f"Notifier '{notifier.get_notifier_name()}' failed",
            extra={"extra_fields": {"message_id": message.id}},
        )
