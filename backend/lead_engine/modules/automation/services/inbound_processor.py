"""
Inbound Reply Processor
Handles provider callbacks: delivery-status updates and inbound replies.

- Deduplicates by (provider, event id); a redelivery is a no-op
- Status updates move the matching Message Log entry forward only
- Inbound messages create an INBOUND entry, mark the lead's latest sent
  outbound entry REPLIED if its thread is still open, optionally pause the
  lead's ACTIVE runs, and emit REPLY / STAGE_AUTO_ADVANCE events
- Malformed payloads are logged and acknowledged without touching state

The dedupe row and all effects share one transaction, so a failed attempt
leaves nothing behind and the provider's redelivery is processed again.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.constants import (
    ActivityType,
    ErrorKind,
    HALT_REASON_LEAD_REPLIED,
    MessageStatus,
    ProviderName,
    WebhookKind,
    check_transition,
)
from lead_engine.modules.automation.repositories.activity_repository import ActivityRepository
from lead_engine.modules.automation.repositories.lead_repository import LeadRepository
from lead_engine.modules.automation.repositories.message_log_repository import MessageLogRepository
from lead_engine.modules.automation.repositories.tenant_config_repository import TenantConfigRepository
from lead_engine.modules.automation.repositories.webhook_event_repository import WebhookEventRepository
from lead_engine.modules.automation.schemas.automation_schemas import (
    InboundMessage,
    LeadActivityEvent,
    StatusUpdate,
)
from lead_engine.modules.automation.services.event_publisher import EventPublisher, event_publisher
from lead_engine.modules.automation.services.providers.factory import ProviderFactory, provider_factory
from lead_engine.modules.automation.services.sequence_run_manager import SequenceRunManager
from lead_engine.shared.core.config import settings
from lead_engine.shared.utils.exceptions import InvalidTransitionError, WebhookPayloadError
from lead_engine.shared.utils.time_utils import utcnow

logger = logging.getLogger("inbound_processor")


class InboundProcessor:

    def __init__(
        self,
        db: AsyncSession,
        publisher: EventPublisher = event_publisher,
        providers: ProviderFactory = provider_factory,
        clock: Callable = utcnow,
        pause_on_reply: Optional[bool] = None,
        auto_advance_stage: Optional[str] = None
    ):
        self.db = db
        self.webhook_repo = WebhookEventRepository(db)
        self.log_repo = MessageLogRepository(db)
        self.lead_repo = LeadRepository(db)
        self.tenant_repo = TenantConfigRepository(db)
        self.activity_repo = ActivityRepository(db)
        self.run_manager = SequenceRunManager(db, clock=clock)
        self.publisher = publisher
        self.providers = providers
        self.clock = clock
        self.pause_on_reply = settings.PAUSE_RUNS_ON_REPLY if pause_on_reply is None else pause_on_reply
        self.auto_advance_stage = settings.REPLY_AUTO_ADVANCE_STAGE if auto_advance_stage is None else auto_advance_stage

    # ============================================
    # RAW WEBHOOK ENTRY POINT
    # ============================================

    async def handle_webhook(self, provider_name: ProviderName, kind: WebhookKind, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Parse a raw provider payload and process it.

        Returns:
            {"success": bool, "duplicate": bool, "message": str}
            success=False only for payloads that could not be parsed (acknowledged anyway).
        """
        provider = self.providers.by_name(provider_name)
        try:
            if kind == WebhookKind.INBOUND:
                parsed = provider.parse_inbound_webhook(payload)
            else:
                parsed = provider.parse_status_webhook(payload)
        except WebhookPayloadError as e:
            logger.warning(f"Ignoring malformed {provider_name.value} {kind.value} webhook: {e.message}")
            return {"success": False, "duplicate": False, "message": e.message}

        if kind == WebhookKind.INBOUND:
            return await self.process_inbound(parsed)
        return await self.process_status(parsed)

    # ============================================
    # STATUS UPDATES
    # ============================================

    async def process_status(self, update: StatusUpdate) -> Dict[str, Any]:
        """
        Advance the matching outbound entry; regressions and repeats are ignored.

        A callback for a message whose SENT has not been committed yet (no
        entry with that provider id, or the entry still PENDING/QUEUED) is not
        recorded in the dedupe ledger, so the provider's redelivery still applies.
        """
        try:
            entry = await self.log_repo.get_by_provider_message_id(update.provider.value, update.provider_message_id)
            if entry is None or entry["status"] in (MessageStatus.PENDING.value, MessageStatus.QUEUED.value):
                await self.db.rollback()
                logger.warning(f"Status {update.status.value} for unknown or unsent message {update.provider_message_id}")
                return {"success": True, "duplicate": False, "message": "no matching message"}

            is_new = await self.webhook_repo.record_if_new(
                update.provider.value, update.dedupe_key, WebhookKind.STATUS.value,
                payload=update.model_dump(mode="json")
            )
            if not is_new:
                await self.db.rollback()
                logger.info(f"Duplicate status webhook {update.dedupe_key}; ignored")
                return {"success": True, "duplicate": True, "message": "duplicate"}

            try:
                check_transition(entry["status"], update.status.value)
            except InvalidTransitionError as e:
                # Late or repeated receipt; the dedupe row is still kept
                await self.db.commit()
                logger.info(f"Ignoring status for message log {entry['id']}: {e.message}")
                return {"success": True, "duplicate": False, "message": "ignored"}

            values = {}
            if update.status == MessageStatus.FAILED:
                values["error_kind"] = ErrorKind.DELIVERY.value
                values["error_message"] = update.error_message or "Delivery failed"

            moved = await self.log_repo.transition(
                entry["id"], update.status, at=update.timestamp or self.clock(), **values
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if moved:
            logger.info(f"Message log {entry['id']} {entry['status']} -> {update.status.value}")
        return {"success": True, "duplicate": False, "message": "updated" if moved else "ignored"}

    # ============================================
    # INBOUND MESSAGES
    # ============================================

    async def process_inbound(self, message: InboundMessage) -> Dict[str, Any]:
        events: List[LeadActivityEvent] = []
        try:
            is_new = await self.webhook_repo.record_if_new(
                message.provider.value, message.provider_event_id, WebhookKind.INBOUND.value,
                payload=message.model_dump(mode="json")
            )
            if not is_new:
                await self.db.rollback()
                logger.info(f"Duplicate inbound webhook {message.provider_event_id}; ignored")
                return {"success": True, "duplicate": True, "message": "duplicate"}

            received_at = message.received_at or self.clock()

            tenant_id = None
            if message.to_number:
                tenant_id = await self.tenant_repo.find_tenant_by_sender(message.to_number)
            lead = await self.lead_repo.find_by_phone(message.from_number, tenant_id)
            lead_id = lead["id"] if lead else None
            tenant_id = tenant_id or (lead["builder_id"] if lead else None)

            inbound = await self.log_repo.create_inbound(
                tenant_id=tenant_id,
                lead_id=lead_id,
                provider=message.provider.value,
                body=message.body,
                from_number=message.from_number,
                to_number=message.to_number,
                provider_message_id=message.provider_message_id,
                received_at=received_at
            )

            replied_log_id = None
            paused_run_ids: List[int] = []
            if lead:
                latest = await self.log_repo.find_latest_sent_outbound(lead_id)
                if latest and MessageStatus.is_open_thread_status(latest["status"]):
                    if await self.log_repo.transition(latest["id"], MessageStatus.REPLIED, at=received_at):
                        replied_log_id = latest["id"]

                if self.pause_on_reply:
                    paused_run_ids = await self.run_manager.pause_active_runs_for_lead(lead_id, HALT_REASON_LEAD_REPLIED)
            else:
                logger.warning(f"Inbound message from unknown number {message.from_number}")

            events.append(await self.publisher.record(
                self.activity_repo, ActivityType.REPLY, tenant_id, lead_id,
                data={
                    "message_log_id": inbound["id"],
                    "replied_message_log_id": replied_log_id,
                    "paused_run_ids": paused_run_ids,
                    "from": message.from_number,
                }
            ))
            if lead and self.auto_advance_stage:
                events.append(await self.publisher.record(
                    self.activity_repo, ActivityType.STAGE_AUTO_ADVANCE, tenant_id, lead_id,
                    data={"from_stage": lead.get("stage"), "to_stage": self.auto_advance_stage}
                ))

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Inbound from {message.from_number} recorded as {inbound['id']} "
            f"(lead={lead_id}, replied={replied_log_id}, paused={paused_run_ids})"
        )

        await self.publisher.publish(events, self.activity_repo)
        await self.db.commit()
        return {"success": True, "duplicate": False, "message": "recorded"}
