"""
Reservation Connector — hands completed booking flows to the reservation backend.

The engine calls `create(...)` once a flow reaches its end with every required
variable present. Implementations never raise for backend problems; they
return a ReservationResult the orchestrator records in the conversation.
"""
from __future__ import annotations

import abc
import re
import uuid
from datetime import date
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ReservationConfig, get_settings
from extraction.substitutor import format_reservation_summary
from models.schemas import RESERVATION_REQUIRED_FIELDS, ReservationDraft, ReservationResult

logger = structlog.get_logger()

_DATE_PARTS_RE = re.compile(r"[.\-/]")
_TIME_RE = re.compile(r"(\d{1,2})[.:](\d{2})")
_HOUR_RE = re.compile(r"(\d{1,2})\s*uhr", re.IGNORECASE)


# ── Field helpers ─────────────────────────────────────────

def get_missing_fields(
    variables: dict[str, Any], required: tuple[str, ...] | list[str] = RESERVATION_REQUIRED_FIELDS,
) -> list[str]:
    return [f for f in required if variables.get(f) is None or variables.get(f) == ""]


def apply_defaults(variables: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    """Fill empty fields from flow defaults without touching captured values."""
    merged = dict(variables)
    for key, value in defaults.items():
        if merged.get(key) is None or merged.get(key) == "":
            merged[key] = value
    return merged


def parse_date(value: str) -> str:
    """Normalize DD.MM.YYYY / DD/MM/YY / ISO strings to YYYY-MM-DD."""
    if re.match(r"^\d{4}-\d{2}-\d{2}$", value):
        return value
    parts = _DATE_PARTS_RE.split(value)
    if len(parts) >= 2 and all(p.isdigit() for p in parts if p):
        day, month = parts[0].zfill(2), parts[1].zfill(2)
        year = parts[2] if len(parts) > 2 and parts[2] else str(date.today().year)
        if len(year) == 2:
            year = "20" + year
        return f"{year}-{month}-{day}"
    return value


def parse_time(value: str) -> str:
    """Normalize 19:00 / 19.00 / 19 Uhr to HH:MM."""
    if re.match(r"^\d{2}:\d{2}$", value):
        return value
    match = _TIME_RE.search(value)
    if match:
        return f"{match.group(1).zfill(2)}:{match.group(2)}"
    match = _HOUR_RE.search(value)
    if match:
        return f"{match.group(1).zfill(2)}:00"
    return value


def build_draft(variables: dict[str, Any]) -> ReservationDraft:
    return ReservationDraft(
        name=str(variables["name"]),
        date=parse_date(str(variables["date"])),
        time=parse_time(str(variables["time"])),
        guestCount=int(variables["guestCount"]),
        phone=str(variables["phone"]) if variables.get("phone") else None,
        email=str(variables["email"]) if variables.get("email") else None,
        specialRequests=str(variables["specialRequests"]) if variables.get("specialRequests") else None,
    )


# ── Connectors ────────────────────────────────────────────

class ReservationConnector(abc.ABC):
    """Abstract base for reservation backends."""

    async def create(
        self, tenant_id: str, conversation_id: str, flow_id: Optional[str],
        variables: dict[str, Any], sender_id: str,
    ) -> ReservationResult:
        missing = get_missing_fields(variables)
        if missing:
            return ReservationResult(success=False, missing_fields=missing)
        try:
            draft = build_draft(variables)
        except (TypeError, ValueError) as e:
            logger.warning("reservation_draft_invalid", conversation_id=conversation_id, error=str(e))
            return ReservationResult(success=False, error=f"invalid reservation data: {e}")
        return await self._create(tenant_id, conversation_id, flow_id, draft, sender_id)

    @abc.abstractmethod
    async def _create(
        self, tenant_id: str, conversation_id: str, flow_id: Optional[str],
        draft: ReservationDraft, sender_id: str,
    ) -> ReservationResult:
        ...

    async def close(self):
        pass


class RESTReservationConnector(ReservationConnector):
    """
    Posts reservations to a REST endpoint and expects `{"id": ...}` back.
    """

    def __init__(self, config: ReservationConfig = None):
        self.config = config or get_settings().reservation
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.request(method, endpoint, **kwargs)
        response.raise_for_status()
        return response.json()

    async def _create(
        self, tenant_id: str, conversation_id: str, flow_id: Optional[str],
        draft: ReservationDraft, sender_id: str,
    ) -> ReservationResult:
        payload = {
            "tenant_id": tenant_id,
            "guest_name": draft.name,
            "reservation_date": draft.date,
            "reservation_time": draft.time,
            "guest_count": draft.guestCount,
            "phone_number": draft.phone,
            "email": draft.email,
            "special_requests": draft.specialRequests,
            "conversation_id": conversation_id,
            "flow_id": flow_id,
            "channel_sender_id": sender_id,
        }
        try:
            result = await self._request("POST", self.config.endpoint, json=payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("reservation_create_failed", conversation_id=conversation_id, error=str(e))
            return ReservationResult(success=False, error=str(e))

        reservation_id = result.get("id") or result.get("reservation_id")
        if not reservation_id:
            return ReservationResult(success=False, error="backend response has no reservation id")
        logger.info("reservation_created", conversation_id=conversation_id,
                    reservation_id=reservation_id, tenant_id=tenant_id)
        return ReservationResult(success=True, reservation_id=str(reservation_id))

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockReservationConnector(ReservationConnector):
    """
    Mock backend for development and testing.
    Keeps created reservations in memory.
    """

    def __init__(self):
        self.reservations: dict[str, dict[str, Any]] = {}

    async def _create(
        self, tenant_id: str, conversation_id: str, flow_id: Optional[str],
        draft: ReservationDraft, sender_id: str,
    ) -> ReservationResult:
        reservation_id = f"res_{uuid.uuid4().hex[:12]}"
        self.reservations[reservation_id] = {
            "tenant_id": tenant_id, "conversation_id": conversation_id,
            "flow_id": flow_id, "sender_id": sender_id, **draft.model_dump(),
        }
        logger.info("mock_reservation_created", reservation_id=reservation_id,
                    summary=format_reservation_summary(draft.model_dump()))
        return ReservationResult(success=True, reservation_id=reservation_id)


def create_reservation_connector(config: ReservationConfig = None) -> ReservationConnector:
    """Factory function to create the appropriate reservation connector."""
    config = config or get_settings().reservation
    if config.type == "rest" and config.base_url:
        return RESTReservationConnector(config)
    logger.warning("using_mock_reservations", reason="no reservation backend configured or base_url empty")
    return MockReservationConnector()
