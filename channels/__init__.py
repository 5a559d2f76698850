"""Channel integration: inbound webhook parsing and outbound dispatch."""
from channels.base import (
    ChannelError,
    RetryableSendError,
    SendErrorKind,
    SendResult,
    MessagingTransport,
    TransportResponse,
    classify_response,
    parse_retry_after,
)
from channels.instagram_adapter import InstagramTransport, parse_webhook_payload
from channels.dispatcher import OutboundDispatcher

__all__ = [
    "ChannelError", "RetryableSendError", "SendErrorKind", "SendResult",
    "MessagingTransport", "TransportResponse", "classify_response", "parse_retry_after",
    "InstagramTransport", "parse_webhook_payload", "OutboundDispatcher",
]
