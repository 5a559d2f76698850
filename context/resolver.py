"""
Conversation Resolver — turns a normalized inbound event into conversation state.

Steps, in order:
  1. drop echoes of the business account's own messages
  2. drop events that carry nothing to react to
  3. drop redeliveries of an already recorded message id
  4. load or create the conversation for (integration, sender)
  5. record the incoming message (the idempotency gate for later deliveries)
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from database.store_base import ConversationStore, MessageStore
from models.schemas import (
    Conversation, InboundEvent, IntegrationContext, Message, MessageDirection, MessageType,
)

logger = structlog.get_logger()


class Resolution(str, Enum):
    RESOLVED = "resolved"
    ECHO = "echo"
    EMPTY = "empty"
    DUPLICATE = "duplicate"


@dataclass
class ResolvedEvent:
    resolution: Resolution
    message_type: MessageType = MessageType.TEXT
    conversation: Optional[Conversation] = None
    incoming: Optional[Message] = None

    @property
    def should_process(self) -> bool:
        return self.resolution == Resolution.RESOLVED

    def __bool__(self):
        return self.should_process


def classify_message_type(event: InboundEvent) -> MessageType:
    if event.quick_reply_payload or event.is_postback:
        return MessageType.QUICK_REPLY
    if event.attachments:
        return MessageType.IMAGE
    return MessageType.TEXT


def is_echo(event: InboundEvent, integration: IntegrationContext) -> bool:
    return event.is_echo or event.sender_id == integration.channel_account_id


class ConversationResolver:

    def __init__(self, conversations: ConversationStore, messages: MessageStore):
        self.conversations = conversations
        self.messages = messages

    async def resolve(self, event: InboundEvent, integration: IntegrationContext) -> ResolvedEvent:
        if is_echo(event, integration):
            logger.debug("inbound_echo_ignored", integration_id=integration.integration_id)
            return ResolvedEvent(Resolution.ECHO)

        message_type = classify_message_type(event)
        if not event.text.strip() and not event.quick_reply_payload and not event.attachments:
            logger.debug("inbound_empty_ignored", integration_id=integration.integration_id)
            return ResolvedEvent(Resolution.EMPTY, message_type)

        if event.message_id and await self.messages.exists(event.message_id):
            logger.info("inbound_duplicate_ignored", message_id=event.message_id,
                        integration_id=integration.integration_id)
            return ResolvedEvent(Resolution.DUPLICATE, message_type)

        conversation = await self.conversations.get_or_create(integration.integration_id, event.sender_id)
        incoming = await self.messages.append(Message(
            conversation_id=conversation.id,
            direction=MessageDirection.INCOMING,
            type=message_type,
            content=event.text,
            quick_reply_payload=event.quick_reply_payload,
            external_message_id=event.message_id,
            flow_id=conversation.current_flow_id,
            node_id=conversation.current_node_id,
        ))
        return ResolvedEvent(Resolution.RESOLVED, message_type, conversation, incoming)
