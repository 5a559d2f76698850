"""
FastAPI Application — Instagram webhook intake for the flow engine.

Provides:
- POST /webhooks/instagram: hands every messaging event to the orchestrator
- GET /health: liveness plus loaded flow / integration counts
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request

from backend.connector import create_reservation_connector
from channels.dispatcher import OutboundDispatcher
from channels.instagram_adapter import InstagramTransport
from config.settings import Settings, get_settings
from core.orchestrator import DialogueOrchestrator, TurnOutcome
from database.store_factory import Stores, create_stores
from utils.logging_setup import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def create_orchestrator(settings: Settings, stores: Stores) -> DialogueOrchestrator:
    transport = InstagramTransport(settings.messaging)
    return DialogueOrchestrator(
        flows=stores.flows,
        conversations=stores.conversations,
        messages=stores.messages,
        integrations=stores.integrations,
        dispatcher=OutboundDispatcher(transport, settings.messaging),
        reservations=create_reservation_connector(settings.reservation),
        timezone=settings.timezone,
    )


settings = get_settings()
configure_logging(settings.logging.level, settings.logging.json)
stores = create_stores(settings)
orchestrator = create_orchestrator(settings, stores)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("flow_engine_started", app_name=settings.app_name,
                store_backend=settings.store.backend, timezone=settings.timezone)
    yield
    await orchestrator.dispatcher.transport.close()
    await orchestrator.reservations.close()
    logger.info("flow_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="FlowEngine API",
    description="Keyword-triggered conversation flows for Instagram messaging",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store_backend": settings.store.backend,
        "integrations": len(settings.integrations),
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/instagram")
async def instagram_webhook(request: Request):
    """
    Meta redelivers anything that is not acknowledged with a 2xx, so every
    well-formed body is acknowledged whatever the individual turns did.
    """
    body_bytes = await request.body()
    try:
        body = json.loads(body_bytes)
    except ValueError:
        logger.warning("instagram_webhook_invalid_json")
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(400, "Invalid payload")

    results = await orchestrator.process_webhook_payload(body)
    responded = sum(1 for r in results if r.outcome == TurnOutcome.RESPONDED)
    logger.info("instagram_webhook_processed", events=len(results), responded=responded)
    return {"received": True, "events": len(results)}
