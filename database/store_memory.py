"""
In-memory stores — dict-backed collaborators for development and testing.

Features:
  - Zero dependencies (no database)
  - get_or_create and conditional update are atomic within one event loop
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Optional

import structlog

from database.store_base import (
    ConversationConflictError, ConversationStore, FlowStore, IntegrationStore, MessageStore,
)
from flows.models import Flow
from models.schemas import (
    Conversation, ConversationPatch, IntegrationContext, Message, MessageDirection, MessageFailure,
)

logger = structlog.get_logger()


class InMemoryFlowStore(FlowStore):

    def __init__(self, flows: Optional[list[Flow]] = None):
        self._flows: dict[str, Flow] = {}
        for flow in flows or []:
            self.add(flow)

    def add(self, flow: Flow) -> None:
        self._flows[flow.id] = flow

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        return self._flows.get(flow_id)

    async def find_flows_by_tenant(self, tenant_id: str) -> list[Flow]:
        return [f for f in self._flows.values() if f.tenant_id == tenant_id]


class InMemoryConversationStore(ConversationStore):

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}     # id → conversation
        self._pair_index: dict[tuple[str, str], str] = {}     # (integration, sender) → id
        self._lock = asyncio.Lock()

    async def get_or_create(self, integration_id: str, sender_id: str) -> Conversation:
        async with self._lock:
            conv_id = self._pair_index.get((integration_id, sender_id))
            if conv_id:
                return self._conversations[conv_id].model_copy(deep=True)
            conv = Conversation(integration_id=integration_id, sender_id=sender_id)
            self._conversations[conv.id] = conv
            self._pair_index[(integration_id, sender_id)] = conv.id
            logger.info("conversation_created", conversation_id=conv.id,
                        integration_id=integration_id)
            return conv.model_copy(deep=True)

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy(deep=True) if conv else None

    async def update(
        self, conversation_id: str, patch: ConversationPatch,
        expected_version: Optional[int] = None,
    ) -> Conversation:
        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise KeyError(f"Conversation {conversation_id} not found")
            if expected_version is not None and current.state_version != expected_version:
                raise ConversationConflictError(conversation_id, expected_version, current.state_version)
            updated = patch.apply(current)
            self._conversations[conversation_id] = updated
            return updated.model_copy(deep=True)


class InMemoryMessageStore(MessageStore):

    def __init__(self):
        self._messages: dict[str, list[Message]] = defaultdict(list)  # conv_id → messages
        self._incoming_ids: set[str] = set()
        self.failures: list[MessageFailure] = []

    async def exists(self, external_message_id: str) -> bool:
        return external_message_id in self._incoming_ids

    async def append(self, message: Message) -> Message:
        if message.direction == MessageDirection.INCOMING and message.external_message_id:
            self._incoming_ids.add(message.external_message_id)
        self._messages[message.conversation_id].append(message)
        return message

    async def list_for_conversation(self, conversation_id: str, limit: int = 50) -> list[Message]:
        return self._messages.get(conversation_id, [])[-limit:]

    async def record_failure(self, failure: MessageFailure) -> None:
        self.failures.append(failure)
        logger.info("message_failure_recorded", conversation_id=failure.conversation_id,
                    error_kind=failure.error_kind, attempts=failure.attempts)


class InMemoryIntegrationStore(IntegrationStore):

    def __init__(self, integrations: Optional[list[IntegrationContext]] = None):
        self._integrations: dict[str, IntegrationContext] = {}
        for integration in integrations or []:
            self.add(integration)

    def add(self, integration: IntegrationContext) -> None:
        self._integrations[integration.integration_id] = integration

    async def get_by_channel_account(self, channel_account_id: str) -> Optional[IntegrationContext]:
        for integration in self._integrations.values():
            if integration.channel_account_id == channel_account_id:
                return integration
        return None

    async def get(self, integration_id: str) -> Optional[IntegrationContext]:
        return self._integrations.get(integration_id)

    async def mark_unhealthy(self, integration_id: str, reason: str) -> None:
        integration = self._integrations.get(integration_id)
        if integration is None:
            return
        self._integrations[integration_id] = integration.model_copy(
            update={"healthy": False, "unhealthy_reason": reason},
        )
        logger.warning("integration_marked_unhealthy", integration_id=integration_id, reason=reason)
