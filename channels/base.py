"""
Channel base infrastructure — errors, send results and the transport interface.

Provides:
- ChannelError / RetryableSendError: structured error hierarchy
- SendErrorKind / SendResult: explicit outcome of every outbound send
- TransportResponse / MessagingTransport: the raw channel send API
- classify_response: map a channel API response onto a SendResult
- parse_retry_after: server backoff hint in seconds
"""
from __future__ import annotations

import abc
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════
#  ERROR CODES (Graph API)
# ══════════════════════════════════════════════════════════════

# Expired, revoked or otherwise invalid access token
CREDENTIAL_ERROR_CODES = frozenset({102, 190})
CREDENTIAL_ERROR_SUBCODES = frozenset({458, 459, 460, 463, 464, 467})

# Missing permission, invalid parameter, recipient unavailable
RECIPIENT_ERROR_CODES = frozenset({10, 100, 200, 230, 551})

# Application / account / page level throttling
RATE_LIMIT_ERROR_CODES = frozenset({4, 17, 32, 341, 613})

RETRYABLE_HTTP_STATUSES = frozenset({408, 429})


# ══════════════════════════════════════════════════════════════
#  ERRORS & RESULTS
# ══════════════════════════════════════════════════════════════

class SendErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"           # 408 / 5xx / API-flagged transient
    CREDENTIAL = "credential"
    RECIPIENT = "recipient"
    REJECTED = "rejected"             # any other non-retryable API error


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error_kind: Optional[SendErrorKind] = None
    error_code: Optional[int] = None
    error_subcode: Optional[int] = None
    http_status: Optional[int] = None
    error_message: str = ""
    retryable: bool = False
    attempts: int = 0
    exhausted: bool = False           # retryable failure that ran out of attempts

    @property
    def is_credential_error(self) -> bool:
        return self.error_kind == SendErrorKind.CREDENTIAL

    @property
    def suppresses_conversation(self) -> bool:
        """Further sends on this conversation are pointless until someone intervenes."""
        return self.error_kind in (SendErrorKind.CREDENTIAL, SendErrorKind.RECIPIENT)

    @classmethod
    def failure(cls, kind: SendErrorKind, message: str, retryable: bool = False, **kwargs) -> "SendResult":
        return cls(success=False, error_kind=kind, error_message=message, retryable=retryable, **kwargs)


class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RetryableSendError(ChannelError):
    """Raised inside the retry loop for a failed attempt that may be retried."""

    def __init__(self, result: SendResult, retry_after: Optional[float] = None, channel: str = ""):
        self.result = result
        self.retry_after = retry_after
        super().__init__(result.error_message or str(result.error_kind), channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TRANSPORT
# ══════════════════════════════════════════════════════════════

class TransportResponse(BaseModel):
    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class MessagingTransport(abc.ABC):
    """
    Channel send API. Returns the raw response for any HTTP status and
    raises httpx.TransportError when the request never completed.
    """

    channel: str = ""

    @abc.abstractmethod
    async def send(self, recipient_id: str, payload: dict[str, Any], access_token: str) -> TransportResponse:
        ...

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════

def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as delta-seconds or an HTTP-date; None when absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def classify_response(response: TransportResponse) -> SendResult:
    """Map one API response to a SendResult (attempts left at 0 for the caller)."""
    error = response.body.get("error") if isinstance(response.body, dict) else None

    if 200 <= response.status_code < 300 and not error:
        return SendResult(
            success=True,
            message_id=response.body.get("message_id"),
            http_status=response.status_code,
        )

    error = error if isinstance(error, dict) else {}
    code = error.get("code")
    subcode = error.get("error_subcode")
    message = error.get("message") or f"HTTP {response.status_code}"
    common = {"error_code": code, "error_subcode": subcode, "http_status": response.status_code}

    if code in CREDENTIAL_ERROR_CODES or subcode in CREDENTIAL_ERROR_SUBCODES:
        return SendResult.failure(SendErrorKind.CREDENTIAL, message, **common)
    if code in RECIPIENT_ERROR_CODES:
        return SendResult.failure(SendErrorKind.RECIPIENT, message, **common)
    if code in RATE_LIMIT_ERROR_CODES or response.status_code == 429:
        return SendResult.failure(SendErrorKind.RATE_LIMIT, message, retryable=True, **common)
    if error.get("is_transient") or response.status_code in RETRYABLE_HTTP_STATUSES \
            or response.status_code >= 500:
        return SendResult.failure(SendErrorKind.TRANSIENT, message, retryable=True, **common)
    return SendResult.failure(SendErrorKind.REJECTED, message, **common)
