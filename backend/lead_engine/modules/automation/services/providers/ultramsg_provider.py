"""
UltraMsg WhatsApp Adapter

API Documentation: https://docs.ultramsg.com

- Send: POST /{instance}/messages/chat with token, to, body
- Webhooks: {"event_type": "message_received" | "message_ack", "data": {...}}
"""
import logging
from typing import Any, Dict

import httpx

from lead_engine.modules.automation.constants import ProviderName
from lead_engine.modules.automation.schemas.automation_schemas import InboundMessage, StatusUpdate
from lead_engine.modules.automation.services.providers.base import (
    WhatsAppProvider,
    classify_http_response,
    connect_retry,
    parse_timestamp,
)
from lead_engine.shared.core.config import settings
from lead_engine.shared.utils.exceptions import (
    PermanentProviderError,
    TransientProviderError,
    WebhookPayloadError,
)
from lead_engine.shared.utils.http_client import http_client_manager
from lead_engine.shared.utils.phone_utils import to_e164

logger = logging.getLogger("ultramsg_provider")

# UltraMsg reports rejected sends with HTTP 200 and an "error" body
_TRANSIENT_ERROR_HINTS = ("rate", "limit", "busy", "try again", "timeout")


class UltraMsgProvider(WhatsAppProvider):
    name = ProviderName.ULTRAMSG

    def __init__(
        self,
        instance_id: str,
        token: str,
        sender_number: str = "",
        api_base: str = None,
        client: httpx.AsyncClient = None
    ):
        super().__init__(sender_number=sender_number)
        self.instance_id = instance_id
        self.token = token
        self.api_base = (api_base or settings.ULTRAMSG_API_BASE).rstrip('/')
        self._client = client

        if not self.is_configured():
            logger.warning("UltraMsg credentials not configured")

    def is_configured(self) -> bool:
        return bool(self.instance_id and self.token)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or http_client_manager.get_client()

    async def send(self, recipient: str, text: str) -> str:
        if not self.is_configured():
            raise PermanentProviderError("UltraMsg credentials are not configured")

        to_number = to_e164(recipient, self.default_region)
        if not to_number:
            raise PermanentProviderError(f"Invalid recipient number: {recipient!r}")

        try:
            response = await self._post({"token": self.token, "to": to_number, "body": text})
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"UltraMsg request timed out: {e}")
        except httpx.HTTPError as e:
            raise TransientProviderError(f"UltraMsg connection error: {e}")

        classify_http_response(response, "UltraMsg")

        data = response.json()
        if data.get("error"):
            error = str(data["error"])
            if any(hint in error.lower() for hint in _TRANSIENT_ERROR_HINTS):
                raise TransientProviderError(f"UltraMsg error: {error}")
            raise PermanentProviderError(f"UltraMsg error: {error}")

        message_id = data.get("id")
        if data.get("sent") not in (True, "true") or not message_id:
            raise PermanentProviderError(f"UltraMsg did not accept the message: {data}")

        logger.info(f"UltraMsg accepted message {message_id} to {to_number}")
        return str(message_id)

    @connect_retry()
    async def _post(self, form: Dict[str, str]) -> httpx.Response:
        return await self.client.post(f"{self.api_base}/{self.instance_id}/messages/chat", data=form)

    # ============================================
    # WEBHOOKS
    # ============================================

    def parse_inbound_webhook(self, payload: Dict[str, Any]) -> InboundMessage:
        if "event_type" not in payload:
            return self._parse_canonical_inbound(payload)

        data = payload.get("data") or {}
        message_id = data.get("id")
        if not message_id:
            raise WebhookPayloadError("UltraMsg inbound payload has no message id")
        if data.get("fromMe"):
            raise WebhookPayloadError("UltraMsg echo of our own message")

        from_number = self.normalize(data.get("from", ""))
        if not from_number:
            raise WebhookPayloadError("UltraMsg inbound payload has no sender")

        return InboundMessage(
            provider=self.name,
            provider_event_id=str(message_id),
            provider_message_id=str(message_id),
            from_number=from_number,
            to_number=self.normalize(data.get("to", "")),
            body=data.get("body", ""),
            received_at=parse_timestamp(data.get("time"))
        )

    def parse_status_webhook(self, payload: Dict[str, Any]) -> StatusUpdate:
        if "event_type" not in payload:
            return self._parse_canonical_status(payload)

        data = payload.get("data") or {}
        message_id = data.get("id")
        ack = data.get("ack")
        if not message_id or not ack:
            raise WebhookPayloadError("UltraMsg ack payload needs data.id and data.ack")

        return StatusUpdate(
            provider=self.name,
            provider_message_id=str(message_id),
            status=self.map_status(str(ack)),
            timestamp=parse_timestamp(data.get("time")),
            provider_event_id=f"{message_id}:{str(ack).lower()}"
        )
