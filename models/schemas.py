"""
Core data models for the flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    INSTAGRAM = "instagram"


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageType(str, Enum):
    TEXT = "text"
    QUICK_REPLY = "quick_reply"
    IMAGE = "image"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


# Variables that the reservation backend needs before a booking is created.
RESERVATION_REQUIRED_FIELDS: tuple[str, ...] = ("name", "date", "time", "guestCount")

VariableValue = Union[str, int]


# ──────────────────────────────────────────────────────────────
#  Conversation: one dialogue between a business and a sender
# ──────────────────────────────────────────────────────────────

class ConversationMetadata(BaseModel):
    """Per-conversation metadata; `variables` holds the extracted fields."""
    variables: dict[str, VariableValue] = Field(default_factory=dict)
    reservation_id: Optional[str] = None
    flow_completed: bool = False


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    integration_id: str
    sender_id: str                            # channel-scoped peer id
    current_flow_id: Optional[str] = None
    current_node_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    last_message_at: datetime = Field(default_factory=_utcnow)
    state_version: int = 0                    # bumped on every conditional update
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def variables(self) -> dict[str, VariableValue]:
        return self.metadata.variables

    @property
    def has_active_flow(self) -> bool:
        return bool(self.current_flow_id)


class ConversationPatch(BaseModel):
    """
    The complete set of changes a single turn applies to a conversation.
    Fields left as None are not touched; `clear_node` distinguishes an
    explicit reset of the current node from "unchanged".
    """
    current_flow_id: Optional[str] = None
    current_node_id: Optional[str] = None
    clear_node: bool = False
    status: Optional[ConversationStatus] = None
    variables: Optional[dict[str, VariableValue]] = None
    reservation_id: Optional[str] = None
    clear_reservation: bool = False
    flow_completed: Optional[bool] = None
    last_message_at: datetime = Field(default_factory=_utcnow)

    def apply(self, conversation: Conversation) -> Conversation:
        """Return a copy of `conversation` with this patch applied."""
        updated = conversation.model_copy(deep=True)
        if self.current_flow_id is not None:
            updated.current_flow_id = self.current_flow_id
        if self.clear_node:
            updated.current_node_id = None
        elif self.current_node_id is not None:
            updated.current_node_id = self.current_node_id
        if self.status is not None:
            updated.status = self.status
        if self.variables is not None:
            updated.metadata.variables = dict(self.variables)
        if self.clear_reservation:
            updated.metadata.reservation_id = None
            updated.metadata.flow_completed = False
        if self.reservation_id is not None:
            updated.metadata.reservation_id = self.reservation_id
        if self.flow_completed is not None:
            updated.metadata.flow_completed = self.flow_completed
        updated.last_message_at = self.last_message_at
        updated.state_version = conversation.state_version + 1
        updated.updated_at = _utcnow()
        return updated


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class QuickReply(BaseModel):
    """A rendered button as sent to the channel."""
    label: str
    payload: str


class Message(BaseModel):
    """Immutable record of a single inbound or outbound turn."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    conversation_id: str
    direction: MessageDirection
    type: MessageType = MessageType.TEXT
    content: str = ""
    quick_reply_payload: Optional[str] = None
    external_message_id: Optional[str] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}


class MessageFailure(BaseModel):
    """An outbound send that could not be delivered."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    integration_id: str
    conversation_id: str
    recipient_id: str
    message_type: MessageType = MessageType.TEXT
    content: str = ""
    quick_replies: list[QuickReply] = []
    error_kind: str = ""
    error_code: Optional[int] = None
    error_message: str = ""
    retryable: bool = False
    attempts: int = 0
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Inbound events & integrations
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """A single normalized messaging event from a channel webhook."""
    channel: ChannelType = ChannelType.INSTAGRAM
    channel_account_id: str                   # the business account the event was delivered to
    sender_id: str
    recipient_id: str = ""
    timestamp: Optional[int] = None
    message_id: Optional[str] = None
    text: str = ""
    quick_reply_payload: Optional[str] = None
    is_postback: bool = False
    attachments: list[dict[str, Any]] = []
    is_echo: bool = False


class IntegrationContext(BaseModel):
    """A business's connection to a channel account."""
    integration_id: str
    tenant_id: str
    channel: ChannelType = ChannelType.INSTAGRAM
    channel_account_id: str
    access_token: str = ""
    healthy: bool = True
    unhealthy_reason: str = ""


# ──────────────────────────────────────────────────────────────
#  Reservations
# ──────────────────────────────────────────────────────────────

class ReservationDraft(BaseModel):
    """The variables a booking is created from."""
    name: str
    date: str                                 # YYYY-MM-DD
    time: str                                 # HH:MM
    guestCount: int
    phone: Optional[str] = None
    email: Optional[str] = None
    specialRequests: Optional[str] = None


class ReservationResult(BaseModel):
    success: bool
    reservation_id: Optional[str] = None
    missing_fields: list[str] = []
    error: str = ""
