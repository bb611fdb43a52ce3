"""
Records mirroring the backend API payloads.

The backend owns lifecycle and validation of every entity; these models only
give optional fields their defaults and keep unknown fields intact so that
merging partial updates never drops data the API sent.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Base for API records: unknown fields are preserved, numeric ids accepted."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class Permission(ApiModel):
    """A permission key granted through a role."""

    key: str
    id: Optional[str] = None
    name: str = ""
    description: Optional[str] = ""
    category: str = ""
    company_id: Optional[str] = None
    is_system: bool = False
    is_active: bool = True
    is_system_permission: Optional[bool] = None


class Role(ApiModel):
    """A role and the permissions it carries."""

    name: str
    id: Optional[str] = None
    description: Optional[str] = None
    permissions: List[Permission] = Field(default_factory=list)


class CompanyRef(ApiModel):
    """Company the user belongs to."""

    id: str
    name: str = ""
    is_active: Optional[bool] = None
    is_first_time: Optional[bool] = None


class UserProfile(ApiModel):
    """Signed-in user as returned by ``/login`` and ``/users/{id}``."""

    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    company: Optional[CompanyRef] = None
    role: Optional[Role] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def company_id(self) -> Optional[str]:
        return self.company.id if self.company else None


class Message(ApiModel):
    """A chat message."""

    id: str
    content: str = ""
    direction: Optional[str] = None  # inbound | outbound
    sender_type: Optional[str] = None  # customer | agent
    sender_name: Optional[str] = None
    message_type: str = "text"
    created_at: Optional[str] = None
    platform_message_id: Optional[str] = None
    status: Optional[str] = None
    delivered_at: Optional[str] = None
    read_at: Optional[str] = None


class Conversation(ApiModel):
    """A chat conversation with a customer."""

    id: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    whatsapp_id: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[str] = None
    last_customer_message_at: Optional[str] = None
    unread_count: int = 0
    status: str = "open"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    latest_message: Optional[Message] = None

    def merged(self, fields: Dict[str, Any]) -> "Conversation":
        """Return a copy with ``fields`` applied on top of this conversation."""
        data = self.model_dump()
        data.update(fields)
        return Conversation.model_validate(data)


class ConversationSummary(ApiModel):
    """Conversation fields carried inside message events."""

    id: Optional[str] = None
    last_message_at: Optional[str] = None
    last_customer_message_at: Optional[str] = None
    unread_count: Optional[int] = None
    status: Optional[str] = None


class MessageReceivedEvent(ApiModel):
    """Payload of ``message.received``: a customer wrote in."""

    message: Message
    conversation_id: str
    conversation: ConversationSummary = Field(default_factory=ConversationSummary)


class MessageSentEvent(ApiModel):
    """Payload of ``message.sent``: another agent replied."""

    message: Message
    conversation_id: str
    conversation: ConversationSummary = Field(default_factory=ConversationSummary)


class ConversationUpdatedEvent(ApiModel):
    """Payload of ``conversation.updated``: partial conversation fields."""

    conversation: Dict[str, Any]


class MessageStatusUpdatedEvent(ApiModel):
    """Payload of ``message.status.updated``."""

    message_id: str
    new_status: str
    delivered_at: Optional[str] = None
    read_at: Optional[str] = None
