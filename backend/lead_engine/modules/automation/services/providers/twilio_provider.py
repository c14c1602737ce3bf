"""
Twilio WhatsApp Adapter

API Documentation: https://www.twilio.com/docs/whatsapp/api

- Send: form POST to /Accounts/{sid}/Messages.json with basic auth,
  From/To prefixed with "whatsapp:"
- Inbound webhook: form fields From, To, Body, MessageSid
- Status webhook: form fields MessageSid, MessageStatus, ErrorCode, ErrorMessage
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
)
from lead_engine.shared.core.config import settings
from lead_engine.shared.utils.exceptions import (
    PermanentProviderError,
    TransientProviderError,
    WebhookPayloadError,
)
from lead_engine.shared.utils.http_client import http_client_manager
from lead_engine.shared.utils.phone_utils import to_e164

logger = logging.getLogger("twilio_provider")


class TwilioProvider(WhatsAppProvider):
    name = ProviderName.TWILIO

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        sender_number: str,
        api_base: str = None,
        client: httpx.AsyncClient = None
    ):
        super().__init__(sender_number=sender_number)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.api_base = (api_base or settings.TWILIO_API_BASE).rstrip('/')
        self._client = client

        if not self.is_configured():
            logger.warning("Twilio credentials not configured")

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.sender_number)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or http_client_manager.get_client()

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"

    async def send(self, recipient: str, text: str) -> str:
        if not self.is_configured():
            raise PermanentProviderError("Twilio credentials are not configured")

        to_number = to_e164(recipient, self.default_region)
        if not to_number:
            raise PermanentProviderError(f"Invalid recipient number: {recipient!r}")

        form = {
            "From": f"whatsapp:{to_e164(self.sender_number, self.default_region) or self.sender_number}",
            "To": f"whatsapp:{to_number}",
            "Body": text,
        }

        try:
            response = await self._post(form)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Twilio request timed out: {e}")
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Twilio connection error: {e}")

        classify_http_response(response, "Twilio")

        sid = response.json().get("sid")
        if not sid:
            raise PermanentProviderError("Twilio response did not include a message sid")
        logger.info(f"Twilio accepted message {sid} to {to_number}")
        return sid

    @connect_retry()
    async def _post(self, form: Dict[str, str]) -> httpx.Response:
        return await self.client.post(
            self.messages_url,
            data=form,
            auth=(self.account_sid, self.auth_token)
        )

    # ============================================
    # WEBHOOKS
    # ============================================

    def parse_inbound_webhook(self, payload: Dict[str, Any]) -> InboundMessage:
        if "MessageSid" not in payload and "SmsMessageSid" not in payload:
            return self._parse_canonical_inbound(payload)

        sid = payload.get("MessageSid") or payload.get("SmsMessageSid")
        from_number = self.normalize(payload.get("From", ""))
        if not from_number:
            raise WebhookPayloadError("Twilio inbound payload has no From number")

        return InboundMessage(
            provider=self.name,
            provider_event_id=sid,
            provider_message_id=sid,
            from_number=from_number,
            to_number=self.normalize(payload.get("To", "")),
            body=payload.get("Body", "")
        )

    def parse_status_webhook(self, payload: Dict[str, Any]) -> StatusUpdate:
        if "MessageStatus" not in payload:
            return self._parse_canonical_status(payload)

        sid = payload.get("MessageSid") or payload.get("SmsSid")
        if not sid:
            raise WebhookPayloadError("Twilio status payload has no MessageSid")

        error_message = payload.get("ErrorMessage")
        if payload.get("ErrorCode") and not error_message:
            error_message = f"Twilio error code {payload.get('ErrorCode')}"

        return StatusUpdate(
            provider=self.name,
            provider_message_id=sid,
            status=self.map_status(payload["MessageStatus"]),
            # Twilio sends one callback per status; sid+status identifies it
            provider_event_id=f"{sid}:{payload['MessageStatus'].lower()}",
            error_message=error_message
        )
