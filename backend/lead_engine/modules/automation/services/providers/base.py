"""
WhatsApp Provider Adapter Contract

Every backing service implements the same capability set:
    send(recipient, text) -> provider message id   (or raises a classified ProviderError)
    parse_inbound_webhook(payload) -> InboundMessage
    parse_status_webhook(payload) -> StatusUpdate

Adapters are chosen per tenant at construction time (see factory.py).
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_fixed,
    retry_if_exception_type,
    before_sleep_log,
)

from lead_engine.modules.automation.constants import MessageStatus, ProviderName
from lead_engine.modules.automation.schemas.automation_schemas import (
    InboundMessage,
    InboundWebhookPayload,
    StatusUpdate,
    StatusWebhookPayload,
)
from lead_engine.shared.core.config import settings
from lead_engine.shared.core.constants import MAX_ERROR_MESSAGE_LENGTH, PROVIDER_CONNECT_RETRY_ATTEMPTS
from lead_engine.shared.utils.exceptions import (
    PermanentProviderError,
    TransientProviderError,
    WebhookPayloadError,
)
from lead_engine.shared.utils.phone_utils import normalize_phone_number

logger = logging.getLogger("providers")

# Neutral status words accepted from any provider's callbacks
CANONICAL_STATUS_MAP = {
    "queued": MessageStatus.QUEUED,
    "accepted": MessageStatus.QUEUED,
    "sending": MessageStatus.QUEUED,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
}


def connect_retry():
    """
    Immediate retry for connection-establishment errors only.

    The request never reached the provider, so resending cannot duplicate a
    message. Timeouts, 5xx and 429 are NOT retried here; they surface as
    TransientProviderError and the dispatcher schedules the backoff.
    """
    return retry(
        stop=stop_after_attempt(PROVIDER_CONNECT_RETRY_ATTEMPTS),
        wait=wait_fixed(0.5),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


def classify_http_response(response: httpx.Response, provider: str) -> None:
    """
    Raise a classified error for a non-2xx provider response.

    - 429 and 5xx: Transient (throttling / provider outage)
    - other 4xx: Permanent (invalid recipient, revoked credentials, malformed request)
    """
    if response.status_code < 400:
        return

    detail = response.text[:MAX_ERROR_MESSAGE_LENGTH]
    if response.status_code == 429 or response.status_code >= 500:
        logger.warning(f"{provider} transient error {response.status_code}: {detail}")
        raise TransientProviderError(f"{provider} error {response.status_code}: {detail}", response.status_code)

    logger.error(f"{provider} permanent error {response.status_code}: {detail}")
    raise PermanentProviderError(f"{provider} error {response.status_code}: {detail}", response.status_code)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds, epoch milliseconds, or ISO-8601 -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        number = float(value)
        if number > 1e12:
            number = number / 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (TypeError, ValueError):
        pass
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise WebhookPayloadError(f"Unrecognised timestamp: {value!r}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class WhatsAppProvider(ABC):
    """Base class for provider adapters."""

    name: ProviderName

    def __init__(self, sender_number: str = "", default_region: Optional[str] = None):
        self.sender_number = sender_number
        self.default_region = default_region or settings.DEFAULT_PHONE_REGION

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def send(self, recipient: str, text: str) -> str:
        """
        Send a text message.

        Returns:
            Provider-assigned message id.

        Raises:
            TransientProviderError: retry later
            PermanentProviderError: will never succeed
        """

    def parse_inbound_webhook(self, payload: Dict[str, Any]) -> InboundMessage:
        """Parse the neutral {from, to, body, providerEventId} shape."""
        return self._parse_canonical_inbound(payload)

    def parse_status_webhook(self, payload: Dict[str, Any]) -> StatusUpdate:
        """Parse the neutral {providerMessageId, status, timestamp} shape."""
        return self._parse_canonical_status(payload)

    # ============================================
    # SHARED PARSING HELPERS
    # ============================================

    def normalize(self, phone: str) -> str:
        return normalize_phone_number(phone, self.default_region)

    def _parse_canonical_inbound(self, payload: Dict[str, Any]) -> InboundMessage:
        try:
            data = InboundWebhookPayload.model_validate(payload)
        except ValidationError as e:
            raise WebhookPayloadError(f"Invalid inbound payload: {e.errors()[:3]}")

        from_number = self.normalize(data.from_number)
        if not from_number:
            raise WebhookPayloadError("Inbound payload has no usable sender number")

        return InboundMessage(
            provider=self.name,
            provider_event_id=data.provider_event_id,
            from_number=from_number,
            to_number=self.normalize(data.to_number) if data.to_number else "",
            body=data.body
        )

    def _parse_canonical_status(self, payload: Dict[str, Any]) -> StatusUpdate:
        try:
            data = StatusWebhookPayload.model_validate(payload)
        except ValidationError as e:
            raise WebhookPayloadError(f"Invalid status payload: {e.errors()[:3]}")

        return StatusUpdate(
            provider=self.name,
            provider_message_id=data.provider_message_id,
            status=self.map_status(data.status),
            timestamp=parse_timestamp(data.timestamp),
            provider_event_id=data.provider_event_id
        )

    def drain_echoes(self, provider_message_id: Optional[str] = None) -> List[StatusUpdate]:
        """Synthetic status updates produced by send(), all of them or those of one message; only the mock produces any."""
        return []

    def map_status(self, raw_status: str) -> MessageStatus:
        raw = (raw_status or "").strip()
        try:
            return MessageStatus(raw.upper())
        except ValueError:
            pass
        mapped = CANONICAL_STATUS_MAP.get(raw.lower())
        if mapped is None:
            raise WebhookPayloadError(f"Unknown status {raw_status!r} from {self.name.value}")
        return mapped
