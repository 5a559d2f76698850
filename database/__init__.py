"""
Database layer — store collaborators used by the flow engine.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (flow exports on disk)

Quick start:
  from database import create_stores
  stores = create_stores(get_settings())
  conversation = await stores.conversations.get_or_create("integration-1", "sender-1")
"""
from database.store_base import (
    ConversationConflictError,
    FlowStore, ConversationStore, MessageStore, IntegrationStore,
)
from database.store_memory import (
    InMemoryFlowStore, InMemoryConversationStore, InMemoryMessageStore, InMemoryIntegrationStore,
)
from database.store_file import FileFlowStore
from database.store_factory import Stores, create_stores

__all__ = [
    # Interfaces
    "ConversationConflictError",
    "FlowStore", "ConversationStore", "MessageStore", "IntegrationStore",
    # Backends
    "InMemoryFlowStore", "InMemoryConversationStore", "InMemoryMessageStore",
    "InMemoryIntegrationStore", "FileFlowStore",
    # Factory
    "Stores", "create_stores",
]
