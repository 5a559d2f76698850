"""
Outbound Dispatcher — sends rendered flow responses with classified retries.

Every send ends in an explicit SendResult:
  - success on the first 2xx without an API error
  - retryable failures (network, 408/429/5xx, rate-limit codes, transient
    flag) are retried up to `max_attempts`, then returned with exhausted=True
  - credential / recipient / other API errors return after one attempt

Backoff honours a server Retry-After; otherwise base * 2^(n-1) + jitter.
"""
from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from channels.base import (
    MessagingTransport, RetryableSendError, SendErrorKind, SendResult,
    classify_response, parse_retry_after,
)
from channels.instagram_adapter import build_image_payload, build_text_payload
from config.settings import MessagingConfig
from models.schemas import QuickReply

logger = structlog.get_logger()


class OutboundDispatcher:

    def __init__(
        self,
        transport: MessagingTransport,
        config: MessagingConfig = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Optional[Callable[[], float]] = None,
    ):
        self.transport = transport
        self.config = config or MessagingConfig()
        self._sleep = sleep
        self._jitter = jitter or (lambda: random.uniform(0, self.config.jitter_seconds))

    # ── Limits ────────────────────────────────────────────

    def sanitize_quick_replies(self, quick_replies: list[QuickReply]) -> list[QuickReply]:
        """Cap the button count and truncate labels/payloads to channel limits."""
        limited = quick_replies[: self.config.max_quick_replies]
        if len(quick_replies) > len(limited):
            logger.warning("quick_replies_truncated", given=len(quick_replies), sent=len(limited))
        return [
            QuickReply(
                label=qr.label[: self.config.max_label_length],
                payload=qr.payload[: self.config.max_payload_length],
            )
            for qr in limited
        ]

    # ── Retry loop ────────────────────────────────────────

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RetryableSendError) and error.retry_after is not None:
            return min(error.retry_after, self.config.max_delay_seconds)
        attempt = retry_state.attempt_number
        return self.config.base_delay_seconds * (2 ** (attempt - 1)) + self._jitter()

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            "dispatch_retry",
            attempt=retry_state.attempt_number,
            error_kind=getattr(getattr(error, "result", None), "error_kind", None),
            wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        )

    async def _attempt(self, recipient_id: str, payload: dict[str, Any], access_token: str) -> SendResult:
        try:
            response = await self.transport.send(recipient_id, payload, access_token)
        except httpx.TransportError as e:
            raise RetryableSendError(
                SendResult.failure(SendErrorKind.NETWORK, str(e) or type(e).__name__, retryable=True),
                channel=self.transport.channel,
            ) from e

        result = classify_response(response)
        if not result.success and result.retryable:
            raise RetryableSendError(
                result,
                retry_after=parse_retry_after(response.header("retry-after")),
                channel=self.transport.channel,
            )
        return result

    async def send_payload(self, recipient_id: str, payload: dict[str, Any], access_token: str) -> SendResult:
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(RetryableSendError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._attempt(recipient_id, payload, access_token)
        except RetryableSendError as e:
            logger.error("dispatch_exhausted", attempts=attempts, error_kind=e.result.error_kind,
                         error_code=e.result.error_code, error=e.result.error_message)
            return e.result.model_copy(update={"attempts": attempts, "exhausted": True})

        if not result.success:
            logger.error("dispatch_failed", attempts=attempts, error_kind=result.error_kind,
                         error_code=result.error_code, http_status=result.http_status,
                         error=result.error_message)
        return result.model_copy(update={"attempts": attempts})

    # ── Public API ────────────────────────────────────────

    async def send(
        self, recipient_id: str, text: str, quick_replies: list[QuickReply],
        access_token: str, image_url: Optional[str] = None,
    ) -> SendResult:
        """
        Send a rendered response. With an image, the image goes first and
        the text is only sent when the image made it.
        """
        if image_url:
            image_result = await self.send_payload(
                recipient_id, build_image_payload(recipient_id, image_url), access_token,
            )
            if not image_result.success:
                logger.warning("dispatch_image_failed_text_skipped", error_kind=image_result.error_kind)
                return image_result
            if not text and not quick_replies:
                return image_result

        payload = build_text_payload(recipient_id, text, self.sanitize_quick_replies(quick_replies))
        result = await self.send_payload(recipient_id, payload, access_token)
        if result.success:
            logger.info("dispatch_sent", message_id=result.message_id, attempts=result.attempts,
                        quick_replies=len(quick_replies))
        return result
