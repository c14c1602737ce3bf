"""
Dispatcher
Sends the current step of one due Sequence Run.

Flow for a claimed (run, step):
    claim (CAS, committed)
    -> business-hours gate (gated step outside the window: reschedule, no send)
    -> open attempt (reuse PENDING/QUEUED entry or create attempt n+1), promote to QUEUED
    -> render template (failure: entry FAILED(RENDER), run FAILED)
    -> rate limiter (denied: run rescheduled to now+retry_after, entry stays QUEUED)
    -> provider.send
         success   -> entry SENT, run advances
         transient -> entry FAILED(TRANSIENT); retry after backoff, or escalate at max attempts
         permanent -> entry FAILED(PERMANENT), run FAILED

Retries and deferrals are future next_fire_at values, never sleeps.
If the run is paused/cancelled while the provider call is in flight, the
Message Log entry is still recorded and the claimed update is skipped. A
run still ACTIVE or PAUSED on that step moves past it anyway, so resuming
it never sends the same step twice.
"""
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.constants import (
    ErrorKind,
    HALT_REASON_LEAD_DELETED,
    HALT_REASON_SEQUENCE_MISSING,
    MessageStatus,
)
from lead_engine.modules.automation.repositories.lead_repository import LeadRepository
from lead_engine.modules.automation.repositories.message_log_repository import MessageLogRepository
from lead_engine.modules.automation.schemas.automation_schemas import StatusUpdate
from lead_engine.modules.automation.services.business_hours import (
    is_within_business_hours,
    snap_to_business_hours,
)
from lead_engine.modules.automation.services.providers.base import WhatsAppProvider
from lead_engine.modules.automation.services.providers.factory import ProviderFactory
from lead_engine.modules.automation.services.rate_limiter import RateLimiter
from lead_engine.modules.automation.services.sequence_run_manager import SequenceRunManager
from lead_engine.modules.automation.services.template_renderer import render_template
from lead_engine.shared.core.config import settings
from lead_engine.shared.core.constants import MAX_ERROR_MESSAGE_LENGTH
from lead_engine.shared.utils.exceptions import (
    ClaimLostError,
    PermanentProviderError,
    RenderError,
    TransientProviderError,
)
from lead_engine.shared.utils.time_utils import utcnow

logger = logging.getLogger("dispatcher")

StatusEchoHandler = Callable[[StatusUpdate], Awaitable[None]]


class DispatchOutcome(str, Enum):
    SENT = "SENT"
    COMPLETED = "COMPLETED"              # Sent, and it was the last step
    CLAIM_LOST = "CLAIM_LOST"
    RATE_LIMITED = "RATE_LIMITED"
    OUTSIDE_HOURS = "OUTSIDE_HOURS"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RUN_CHANGED = "RUN_CHANGED"          # Run paused/cancelled mid-dispatch


def compute_backoff(attempt: int, base: int, multiplier: int, cap: int) -> int:
    """Seconds to wait after failed attempt number `attempt` (1-based): base * multiplier^(attempt-1), capped."""
    return min(base * (multiplier ** max(attempt - 1, 0)), cap)


class Dispatcher:

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: RateLimiter,
        providers: ProviderFactory,
        worker_id: str,
        clock: Callable[[], datetime] = utcnow,
        status_echo_handler: Optional[StatusEchoHandler] = None,
        max_attempts: int = None,
        claim_lease_seconds: int = None
    ):
        self.db = db
        self.run_manager = SequenceRunManager(db, clock=clock)
        self.log_repo = MessageLogRepository(db)
        self.lead_repo = LeadRepository(db)
        self.rate_limiter = rate_limiter
        self.providers = providers
        self.worker_id = worker_id
        self.clock = clock
        self.status_echo_handler = status_echo_handler
        self.max_attempts = max_attempts or settings.DISPATCH_MAX_ATTEMPTS
        self.claim_lease_seconds = claim_lease_seconds or settings.SCHEDULER_CLAIM_LEASE_SECONDS

    async def dispatch(self, run: dict) -> DispatchOutcome:
        """
        Claim and dispatch one due run (as read by the scheduler poll).
        Never raises for provider/render/rate-limit outcomes; those are recorded.
        """
        try:
            version = await self.run_manager.claim(run, self.worker_id, self.claim_lease_seconds)
            await self.db.commit()
        except ClaimLostError:
            await self.db.rollback()
            logger.debug(f"Run {run['id']} claimed by another worker; skipping")
            return DispatchOutcome.CLAIM_LOST

        try:
            return await self._dispatch_claimed(run, version)
        except Exception:
            # Claim lease expires and the run becomes due again
            await self.db.rollback()
            logger.exception(f"Unexpected error dispatching run {run['id']}")
            raise

    async def _dispatch_claimed(self, run: dict, version: int) -> DispatchOutcome:
        run_id = run["id"]
        step_index = run["current_step_index"]
        now = self.clock()

        sequence = await self.run_manager.sequence_repo.get_sequence_with_steps(run["sequence_id"])
        steps = sequence["steps"] if sequence else []
        if step_index >= len(steps):
            await self.run_manager.fail(run_id, version, HALT_REASON_SEQUENCE_MISSING)
            await self.db.commit()
            return DispatchOutcome.FAILED
        step = steps[step_index]

        tenant = await self.run_manager.tenant_repo.get_settings(run["tenant_id"])
        provider = self.providers.for_tenant(tenant)

        if step.get("business_hours_only") and not is_within_business_hours(now, tenant.business_hours):
            next_fire_at = snap_to_business_hours(now, tenant.business_hours)
            await self.run_manager.reschedule(run_id, version, next_fire_at)
            await self.db.commit()
            logger.info(f"Run {run_id} step {step_index} outside business hours; deferred to {next_fire_at.isoformat()}")
            return DispatchOutcome.OUTSIDE_HOURS

        bindings = await self.lead_repo.get_template_bindings(run["lead_id"])
        if bindings is None:
            await self.run_manager.cancel_claimed(run_id, version, HALT_REASON_LEAD_DELETED)
            await self.db.commit()
            logger.warning(f"Run {run_id} cancelled: lead {run['lead_id']} no longer exists")
            return DispatchOutcome.CANCELLED

        attempt = await self._open_attempt(run, step, provider, bindings.get("phone"))

        # ---- Render ----
        template = await self.run_manager.sequence_repo.get_template(step["template_id"])
        try:
            if template is None:
                raise RenderError(f"Template {step['template_id']} not found")
            content = render_template(template["content"], bindings, template.get("variables") or [])
        except RenderError as e:
            await self.log_repo.transition(
                attempt["id"], MessageStatus.FAILED, at=now,
                error_kind=ErrorKind.RENDER.value, error_message=e.message
            )
            await self._fail_run(run_id, version, f"Render failed: {e.message}")
            await self.db.commit()
            return DispatchOutcome.FAILED

        await self.log_repo.set_content(attempt["id"], content)

        # ---- Rate limit ----
        acquired = await self.rate_limiter.try_acquire(run["tenant_id"], provider.name.value, tenant.rate_limits)
        if not acquired.granted:
            next_fire_at = now + timedelta(seconds=acquired.retry_after)
            if step.get("business_hours_only"):
                next_fire_at = snap_to_business_hours(next_fire_at, tenant.business_hours)
            await self.run_manager.reschedule(run_id, version, next_fire_at)
            await self.db.commit()
            return DispatchOutcome.RATE_LIMITED

        # Persist QUEUED + content before the network call
        await self.db.commit()

        # ---- Send ----
        try:
            provider_message_id = await provider.send(bindings.get("phone", ""), content)
        except TransientProviderError as e:
            return await self._handle_transient(run, version, attempt, step, tenant, e)
        except PermanentProviderError as e:
            failed_at = self.clock()
            await self.log_repo.transition(
                attempt["id"], MessageStatus.FAILED, at=failed_at,
                error_kind=ErrorKind.PERMANENT.value, error_message=e.message[:MAX_ERROR_MESSAGE_LENGTH]
            )
            await self._fail_run(run_id, version, f"Permanent provider error: {e.message}")
            await self.db.commit()
            return DispatchOutcome.FAILED

        sent_at = self.clock()
        await self.log_repo.transition(
            attempt["id"], MessageStatus.SENT, at=sent_at,
            provider_message_id=provider_message_id,
            from_number=provider.sender_number or None
        )

        outcome = DispatchOutcome.SENT
        try:
            values = await self.run_manager.advance(run, version, sent_at, steps, tenant.business_hours)
            if values.get("next_fire_at") is None:
                outcome = DispatchOutcome.COMPLETED
        except ClaimLostError:
            # The step was sent; a resume must continue after it, not resend it
            moved = await self.run_manager.record_sent_step(run, sent_at, steps, tenant.business_hours)
            logger.warning(f"Run {run_id} changed during dispatch; message recorded (step pointer moved: {moved})")
            outcome = DispatchOutcome.RUN_CHANGED
        await self.db.commit()

        logger.info(f"Run {run_id} step {step_index} sent as {provider_message_id} (attempt {attempt['attempt']})")
        await self._deliver_echoes(provider, provider_message_id)
        return outcome

    async def _open_attempt(self, run: dict, step: dict, provider: WhatsAppProvider, to_number: Optional[str]) -> dict:
        """Reuse the open attempt for (run, step) or create the next one, and mark it QUEUED."""
        attempt = await self.log_repo.find_open_attempt(run["id"], run["current_step_index"])
        if attempt is None:
            number = await self.log_repo.get_max_attempt(run["id"], run["current_step_index"]) + 1
            attempt = await self.log_repo.create_outbound_attempt(
                tenant_id=run["tenant_id"],
                lead_id=run["lead_id"],
                run_id=run["id"],
                sequence_id=run["sequence_id"],
                step_index=run["current_step_index"],
                template_id=step.get("template_id"),
                provider=provider.name.value,
                attempt=number,
                to_number=to_number
            )
        if attempt["status"] == MessageStatus.PENDING.value:
            await self.log_repo.transition(attempt["id"], MessageStatus.QUEUED)
            attempt = {**attempt, "status": MessageStatus.QUEUED.value}
        return attempt

    async def _handle_transient(self, run, version, attempt, step, tenant, error: TransientProviderError) -> DispatchOutcome:
        failed_at = self.clock()
        number = attempt["attempt"]

        if number >= self.max_attempts:
            await self.log_repo.transition(
                attempt["id"], MessageStatus.FAILED, at=failed_at,
                error_kind=ErrorKind.PERMANENT.value,
                error_message=f"Gave up after {number} attempts: {error.message}"[:MAX_ERROR_MESSAGE_LENGTH]
            )
            await self._fail_run(run["id"], version, f"Provider unavailable after {number} attempts: {error.message}")
            await self.db.commit()
            return DispatchOutcome.FAILED

        await self.log_repo.transition(
            attempt["id"], MessageStatus.FAILED, at=failed_at,
            error_kind=ErrorKind.TRANSIENT.value, error_message=error.message[:MAX_ERROR_MESSAGE_LENGTH]
        )

        delay = compute_backoff(
            number,
            settings.DISPATCH_BACKOFF_BASE_SECONDS,
            settings.DISPATCH_BACKOFF_MULTIPLIER,
            settings.DISPATCH_BACKOFF_MAX_SECONDS
        )
        next_fire_at = failed_at + timedelta(seconds=delay)
        if step.get("business_hours_only"):
            next_fire_at = snap_to_business_hours(next_fire_at, tenant.business_hours)

        outcome = DispatchOutcome.RETRY_SCHEDULED
        try:
            await self.run_manager.reschedule(run["id"], version, next_fire_at)
        except ClaimLostError:
            outcome = DispatchOutcome.RUN_CHANGED
        await self.db.commit()

        logger.warning(
            f"Run {run['id']} step {run['current_step_index']} attempt {number} failed (transient): "
            f"{error.message}; retry at {next_fire_at.isoformat()}"
        )
        return outcome

    async def _fail_run(self, run_id: int, version: int, reason: str) -> None:
        try:
            await self.run_manager.fail(run_id, version, reason)
        except ClaimLostError:
            logger.warning(f"Run {run_id} changed during dispatch; failure recorded on the message log only")

    async def _deliver_echoes(self, provider: WhatsAppProvider, provider_message_id: str) -> None:
        # Only this send's echoes; other workers share the provider instance
        echoes = provider.drain_echoes(provider_message_id)
        if not echoes or self.status_echo_handler is None:
            return
        for update in echoes:
            try:
                await self.status_echo_handler(update)
            except Exception as e:
                logger.error(f"Status echo for {update.provider_message_id} failed: {e}")
