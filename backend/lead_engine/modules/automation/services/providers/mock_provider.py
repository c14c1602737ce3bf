"""
Mock WhatsApp Adapter

No network. Used in development, demos and tests:
- Deterministic message ids: mock-1, mock-2, ...
- Scriptable failures: queue exceptions to raise on the next send() calls
- Records every accepted message in .sent
- Optionally echoes a synthetic DELIVERED status per send, drained by the
  dispatcher after its transaction commits
"""
import itertools
import logging
from typing import Any, Dict, List, Optional

from lead_engine.modules.automation.constants import MessageStatus, ProviderName
from lead_engine.modules.automation.schemas.automation_schemas import StatusUpdate
from lead_engine.modules.automation.services.providers.base import WhatsAppProvider
from lead_engine.shared.utils.exceptions import PermanentProviderError
from lead_engine.shared.utils.phone_utils import to_e164

logger = logging.getLogger("mock_provider")


class MockProvider(WhatsAppProvider):
    name = ProviderName.MOCK

    def __init__(self, sender_number: str = "", echo_status: bool = False):
        super().__init__(sender_number=sender_number)
        self.echo_status = echo_status
        self.sent: List[Dict[str, Any]] = []
        self._failures: List[Exception] = []
        self._echoes: List[StatusUpdate] = []
        self._ids = itertools.count(1)

    def fail_next(self, *errors: Exception) -> None:
        """Raise these errors, in order, on the next send() calls."""
        self._failures.extend(errors)

    async def send(self, recipient: str, text: str) -> str:
        if self._failures:
            error = self._failures.pop(0)
            logger.info(f"Mock send to {recipient} failing with {type(error).__name__}")
            raise error

        to_number = to_e164(recipient, self.default_region)
        if not to_number:
            raise PermanentProviderError(f"Invalid recipient number: {recipient!r}")

        message_id = f"mock-{next(self._ids)}"
        self.sent.append({"id": message_id, "to": to_number, "body": text})
        logger.info(f"Mock accepted message {message_id} to {to_number}")

        if self.echo_status:
            self._echoes.append(StatusUpdate(
                provider=self.name,
                provider_message_id=message_id,
                status=MessageStatus.DELIVERED,
                provider_event_id=f"{message_id}:delivered"
            ))
        return message_id

    def drain_echoes(self, provider_message_id: Optional[str] = None) -> List[StatusUpdate]:
        if provider_message_id is None:
            echoes, self._echoes = self._echoes, []
            return echoes
        echoes = [e for e in self._echoes if e.provider_message_id == provider_message_id]
        self._echoes = [e for e in self._echoes if e.provider_message_id != provider_message_id]
        return echoes
