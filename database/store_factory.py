"""
Store Factory — create the store collaborators from configuration.

Configuration in settings.yaml:
    store:
      #   "memory" — empty in-memory flow store (development, testing)
      #   "file"   — flow exports loaded from flows_dir
      backend: "file"
      flows_dir: "./data/flows"

    integrations:
      - integration_id: "..."
        tenant_id: "..."
        channel_account_id: "${INSTAGRAM_ACCOUNT_ID}"
        access_token: "${INSTAGRAM_ACCESS_TOKEN}"

Conversations, messages and integrations always live in memory here; a
deployment with a real database swaps in its own store implementations.

Usage:
    from database.store_factory import create_stores
    stores = create_stores(get_settings())
"""
from __future__ import annotations

from dataclasses import dataclass

import structlog

from config.settings import Settings
from database.store_base import ConversationStore, FlowStore, IntegrationStore, MessageStore
from database.store_memory import (
    InMemoryConversationStore, InMemoryFlowStore, InMemoryIntegrationStore, InMemoryMessageStore,
)
from models.schemas import IntegrationContext

logger = structlog.get_logger()


@dataclass
class Stores:
    flows: FlowStore
    conversations: ConversationStore
    messages: MessageStore
    integrations: IntegrationStore


def create_stores(settings: Settings) -> Stores:
    backend = settings.store.backend

    if backend == "file":
        from database.store_file import FileFlowStore
        flows = FileFlowStore(flows_dir=settings.store.flows_dir)
        logger.info("store_created", backend="file", flows_dir=settings.store.flows_dir)
    else:  # "memory" or default
        flows = InMemoryFlowStore()
        logger.info("store_created", backend="memory")

    integrations = InMemoryIntegrationStore([
        IntegrationContext(
            integration_id=cfg.integration_id,
            tenant_id=cfg.tenant_id,
            channel_account_id=cfg.channel_account_id,
            access_token=cfg.access_token,
        )
        for cfg in settings.integrations
        if cfg.integration_id and cfg.channel_account_id
    ])

    return Stores(
        flows=flows,
        conversations=InMemoryConversationStore(),
        messages=InMemoryMessageStore(),
        integrations=integrations,
    )
