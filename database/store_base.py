"""
Abstract stores — the persistence collaborators the flow engine talks to.

Implementations:
  - InMemory*Store  (dict-based, single-process, no persistence)
  - FileFlowStore (flow exports loaded from a directory)

The engine only needs read/write-by-key operations; querying, retention and
dashboards live outside this service.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from flows.models import Flow
from models.schemas import (
    Conversation, ConversationPatch, IntegrationContext, Message, MessageFailure,
)


class ConversationConflictError(Exception):
    """The conversation changed since it was read (stale `state_version`)."""

    def __init__(self, conversation_id: str, expected_version: int, actual_version: int):
        self.conversation_id = conversation_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Conversation {conversation_id} is at version {actual_version}, expected {expected_version}"
        )


class FlowStore(ABC):

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def find_flows_by_tenant(self, tenant_id: str) -> list[Flow]:
        ...


class ConversationStore(ABC):

    @abstractmethod
    async def get_or_create(self, integration_id: str, sender_id: str) -> Conversation:
        """Return the conversation for this pair, creating it atomically on first contact."""
        ...

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def update(
        self, conversation_id: str, patch: ConversationPatch,
        expected_version: Optional[int] = None,
    ) -> Conversation:
        """
        Apply `patch` in one write. When `expected_version` is given and the
        stored version differs, raise ConversationConflictError instead.
        """
        ...


class MessageStore(ABC):

    @abstractmethod
    async def exists(self, external_message_id: str) -> bool:
        """True when an incoming message with this channel id was already recorded."""
        ...

    @abstractmethod
    async def append(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def list_for_conversation(self, conversation_id: str, limit: int = 50) -> list[Message]:
        ...

    @abstractmethod
    async def record_failure(self, failure: MessageFailure) -> None:
        ...


class IntegrationStore(ABC):

    @abstractmethod
    async def get_by_channel_account(self, channel_account_id: str) -> Optional[IntegrationContext]:
        ...

    @abstractmethod
    async def mark_unhealthy(self, integration_id: str, reason: str) -> None:
        """Flag an integration whose credentials the channel rejected."""
        ...
