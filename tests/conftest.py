"""Shared test fixtures for the flow engine."""
from datetime import date
from typing import Any

import pytest

from backend.connector import MockReservationConnector
from channels.base import MessagingTransport, TransportResponse
from channels.dispatcher import OutboundDispatcher
from config.settings import MessagingConfig
from core.orchestrator import DialogueOrchestrator
from database.store_memory import (
    InMemoryConversationStore, InMemoryFlowStore, InMemoryIntegrationStore, InMemoryMessageStore,
)
from flows.loader import load_flow
from models.schemas import InboundEvent, IntegrationContext

# Monday
TODAY = date(2026, 3, 2)

ACCOUNT_ID = "17841400000000001"
SENDER_ID = "5550001"


class FakeTransport(MessagingTransport):
    """Records every send; answers from `responses` first, then with success."""

    channel = "instagram"

    def __init__(self, responses: list[Any] = None):
        self.responses = list(responses or [])
        self.sent: list[tuple[str, dict[str, Any], str]] = []
        self.closed = False

    async def send(self, recipient_id: str, payload: dict[str, Any], access_token: str) -> TransportResponse:
        self.sent.append((recipient_id, payload, access_token))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return TransportResponse(
            status_code=200,
            body={"recipient_id": recipient_id, "message_id": f"mid.out.{len(self.sent)}"},
        )

    async def close(self) -> None:
        self.closed = True

    @property
    def texts(self) -> list[str]:
        return [p["message"].get("text", "") for _, p, _ in self.sent]


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def reservation_flow_raw() -> dict[str, Any]:
    """Editor export of a small booking flow: buttons first, then free-text questions."""
    return {
        "id": "flow-reservation",
        "tenant_id": "tenant-1",
        "name": "Tischreservierung",
        "status": "aktiv",
        "triggers": [{
            "id": "t-reserve",
            "type": "KEYWORD",
            "config": {"keywords": ["reservieren", "tisch"], "matchType": "CONTAINS"},
            "startNodeId": "welcome",
        }],
        "nodes": [
            {"id": "welcome", "data": {
                "text": "Hallo! Wann möchtest du kommen?",
                "quickReplies": [
                    {"id": "qr-today", "label": "Heute", "targetNodeId": "ask-time"},
                    {"id": "qr-other", "label": "Anderer Tag", "targetNodeId": "ask-date"},
                ],
            }},
            {"id": "ask-date", "data": {"text": "An welchem Tag?"}},
            {"id": "ask-time", "data": {"text": "Um wie viel Uhr?"}},
            {"id": "ask-guests", "data": {"text": "Für wie viele Personen?"}},
            {"id": "ask-name", "data": {"text": "Auf welchen Namen?"}},
            {"id": "summary", "data": {"text": "Danke! Deine Reservierung:", "variant": "summary"}},
        ],
        "edges": [
            {"id": "e1", "source": "ask-date", "target": "ask-time"},
            {"id": "e2", "source": "ask-time", "target": "ask-guests"},
            {"id": "e3", "source": "ask-guests", "target": "ask-name"},
            {"id": "e4", "source": "ask-name", "target": "summary"},
        ],
        "metadata": {"output_config": {"type": "reservation"}},
    }


@pytest.fixture
def flow_raw() -> dict[str, Any]:
    return reservation_flow_raw()


@pytest.fixture
def reservation_flow(flow_raw):
    return load_flow(flow_raw)


@pytest.fixture
def integration() -> IntegrationContext:
    return IntegrationContext(
        integration_id="int-1",
        tenant_id="tenant-1",
        channel_account_id=ACCOUNT_ID,
        access_token="EAAG-test-token",
    )


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make(text: str = "", quick_reply_payload: str = None, sender_id: str = SENDER_ID,
              message_id: str = None, **kwargs) -> InboundEvent:
        counter["n"] += 1
        return InboundEvent(
            channel_account_id=ACCOUNT_ID,
            sender_id=sender_id,
            recipient_id=ACCOUNT_ID,
            message_id=message_id or f"mid.in.{counter['n']}",
            text=text,
            quick_reply_payload=quick_reply_payload,
            **kwargs,
        )

    return _make


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def dispatcher(transport, sleep) -> OutboundDispatcher:
    return OutboundDispatcher(transport, MessagingConfig(), sleep=sleep, jitter=lambda: 0.0)


@pytest.fixture
def flow_store(reservation_flow) -> InMemoryFlowStore:
    return InMemoryFlowStore([reservation_flow])


@pytest.fixture
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def integration_store(integration) -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore([integration])


@pytest.fixture
def reservations() -> MockReservationConnector:
    return MockReservationConnector()


@pytest.fixture
def orchestrator(flow_store, conversation_store, message_store, integration_store,
                 dispatcher, reservations) -> DialogueOrchestrator:
    return DialogueOrchestrator(
        flows=flow_store,
        conversations=conversation_store,
        messages=message_store,
        integrations=integration_store,
        dispatcher=dispatcher,
        reservations=reservations,
        today=lambda: TODAY,
    )
