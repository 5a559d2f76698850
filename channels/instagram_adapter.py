"""
Instagram Channel Adapter — Instagram Messaging (Graph API) integration.

Provides:
- parse_webhook_payload: normalize `messaging[]` and `changes[]` webhook
  entries into InboundEvents
- Send API payload builders: text (+ quick replies) and image attachments
- InstagramTransport: httpx client for POST /{version}/me/messages
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from channels.base import MessagingTransport, TransportResponse
from config.settings import MessagingConfig
from models.schemas import ChannelType, InboundEvent, QuickReply

logger = structlog.get_logger()

SUPPORTED_CHANGE_FIELDS = frozenset({"messages", "messaging_postbacks"})


# ══════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════

def _postback_message_id(sender_id: str, recipient_id: str, timestamp: Any, payload: str) -> str:
    """Postbacks may arrive without a mid; derive a stable id so redeliveries dedupe."""
    return f"postback:{sender_id}:{recipient_id}:{timestamp or ''}:{(payload or '')[:120]}"


def _event_from_messaging(raw: dict[str, Any], account_id: str) -> Optional[InboundEvent]:
    sender_id = (raw.get("sender") or {}).get("id")
    recipient_id = (raw.get("recipient") or {}).get("id") or account_id
    message = raw.get("message")
    postback = raw.get("postback")

    # Read receipts, reactions, typing indicators
    if not sender_id or (not message and not postback):
        return None

    timestamp = raw.get("timestamp")
    if message:
        quick_reply = message.get("quick_reply") or {}
        return InboundEvent(
            channel=ChannelType.INSTAGRAM,
            channel_account_id=account_id or recipient_id,
            sender_id=str(sender_id),
            recipient_id=str(recipient_id),
            timestamp=timestamp,
            message_id=message.get("mid"),
            text=message.get("text") or "",
            quick_reply_payload=quick_reply.get("payload"),
            attachments=message.get("attachments") or [],
            is_echo=bool(message.get("is_echo")),
        )

    payload = postback.get("payload") or ""
    return InboundEvent(
        channel=ChannelType.INSTAGRAM,
        channel_account_id=account_id or recipient_id,
        sender_id=str(sender_id),
        recipient_id=str(recipient_id),
        timestamp=timestamp,
        message_id=postback.get("mid") or _postback_message_id(sender_id, recipient_id, timestamp, payload),
        text=postback.get("title") or "",
        quick_reply_payload=payload or None,
        is_postback=True,
    )


def _event_from_change(change: dict[str, Any], account_id: str) -> Optional[InboundEvent]:
    field = change.get("field")
    if field not in SUPPORTED_CHANGE_FIELDS:
        logger.info("webhook_change_ignored", field=field)
        return None

    value = change.get("value")
    if not isinstance(value, dict):
        return None

    sender_id = (value.get("from") or {}).get("id") or (value.get("sender") or {}).get("id")
    if not sender_id:
        logger.warning("webhook_change_missing_sender", field=field, value_keys=sorted(value))
        return None
    recipient_id = (value.get("to") or {}).get("id") or (value.get("recipient") or {}).get("id") or account_id
    timestamp = value.get("timestamp")

    message = value.get("message")
    text = value.get("text")
    if isinstance(message, str):
        message = {"text": message}
    elif not isinstance(message, dict):
        message = {"text": text} if isinstance(text, str) else None

    if message is not None:
        mid = value.get("message_id") or value.get("mid") or message.get("mid")
        message = {**message, "mid": mid or f"{timestamp}-{sender_id}"}

    return _event_from_messaging({
        "sender": {"id": sender_id},
        "recipient": {"id": recipient_id},
        "timestamp": timestamp,
        "message": message,
        "postback": value.get("postback"),
    }, recipient_id)


def parse_webhook_payload(payload: dict[str, Any]) -> list[InboundEvent]:
    """Flatten an Instagram webhook body into the events it carries."""
    if not isinstance(payload, dict) or payload.get("object") != "instagram":
        logger.info("webhook_object_ignored", object=(payload or {}).get("object") if isinstance(payload, dict) else None)
        return []

    events: list[InboundEvent] = []
    for entry in payload.get("entry") or []:
        account_id = str(entry.get("id") or "")
        for raw in entry.get("messaging") or []:
            event = _event_from_messaging(raw, account_id)
            if event:
                events.append(event)
        for change in entry.get("changes") or []:
            event = _event_from_change(change, account_id)
            if event:
                events.append(event)

    if not events:
        logger.debug("webhook_no_events", entries=len(payload.get("entry") or []))
    return events


# ══════════════════════════════════════════════════════════════
#  OUTBOUND PAYLOADS
# ══════════════════════════════════════════════════════════════

def build_text_payload(recipient_id: str, text: str, quick_replies: list[QuickReply]) -> dict[str, Any]:
    message: dict[str, Any] = {"text": text}
    if quick_replies:
        message["quick_replies"] = [
            {"content_type": "text", "title": qr.label, "payload": qr.payload}
            for qr in quick_replies
        ]
    return {"recipient": {"id": recipient_id}, "messaging_type": "RESPONSE", "message": message}


def build_image_payload(recipient_id: str, image_url: str) -> dict[str, Any]:
    return {
        "recipient": {"id": recipient_id},
        "messaging_type": "RESPONSE",
        "message": {"attachment": {"type": "image", "payload": {"url": image_url}}},
    }


# ══════════════════════════════════════════════════════════════
#  TRANSPORT
# ══════════════════════════════════════════════════════════════

class InstagramTransport(MessagingTransport):
    """POSTs Send API payloads; non-2xx responses are returned, not raised."""

    channel = ChannelType.INSTAGRAM.value

    def __init__(self, config: MessagingConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or MessagingConfig()
        self.client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.graph_base_url,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def send(self, recipient_id: str, payload: dict[str, Any], access_token: str) -> TransportResponse:
        client = self._get_client()
        response = await client.post(
            f"/{self.config.api_version}/me/messages",
            params={"access_token": access_token},
            json=payload,
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        return TransportResponse(
            status_code=response.status_code,
            body=body if isinstance(body, dict) else {},
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
