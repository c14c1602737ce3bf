"""
Sequence Run Manager
Owns the lifecycle of one (lead, sequence) execution.

Operations:
- start: create an ACTIVE run (one ACTIVE run per lead+sequence)
- claim: exclusive compare-and-swap claim of a due run
- advance: move to the next step, or complete
- record_sent_step: move past a step that was sent after the claim was lost
- reschedule / fail: outcomes of a dispatch by the claim holder
- pause / cancel / resume: administrative or reply-triggered

NOTE: Methods do NOT commit. Callers (dispatcher, trigger listener,
inbound processor, API) own the transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.constants import RunStatus
from lead_engine.modules.automation.repositories.sequence_repository import SequenceRepository
from lead_engine.modules.automation.repositories.sequence_run_repository import SequenceRunRepository
from lead_engine.modules.automation.repositories.tenant_config_repository import TenantConfigRepository
from lead_engine.modules.automation.schemas.automation_schemas import BusinessHoursConfig
from lead_engine.modules.automation.services.business_hours import snap_to_business_hours
from lead_engine.shared.utils.exceptions import ConflictError, EntityNotFoundError
from lead_engine.shared.utils.time_utils import ensure_aware, utcnow

logger = logging.getLogger("sequence_run_manager")


def validate_step_orders(steps: List[dict]) -> None:
    """Steps must exist and carry step_order 1..n with no gaps or repeats."""
    if not steps:
        raise ValueError("Sequence has no steps")
    orders = [s["step_order"] for s in steps]
    if orders != list(range(1, len(steps) + 1)):
        raise ValueError(f"Step orders must be contiguous from 1, got {orders}")


def compute_fire_at(base: datetime, step: dict, business_hours: BusinessHoursConfig) -> datetime:
    """base + step delay, snapped into business hours if the step requires it."""
    target = ensure_aware(base) + timedelta(hours=step.get("delay_hours") or 0)
    if step.get("business_hours_only"):
        target = snap_to_business_hours(target, business_hours)
    return target


class SequenceRunManager:

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.run_repo = SequenceRunRepository(db)
        self.sequence_repo = SequenceRepository(db)
        self.tenant_repo = TenantConfigRepository(db)
        self.clock = clock

    # ============================================
    # START
    # ============================================

    async def start(
        self,
        tenant_id: str,
        lead_id: str,
        sequence_id: int,
        trigger_event: Optional[str] = None
    ) -> dict:
        """
        Create an ACTIVE run at step 0.

        next_fire_at = now + step0.delay (snapped if step 0 is business-hours-only).

        Raises:
            EntityNotFoundError: Sequence missing or owned by another tenant
            ValueError: Sequence inactive or its steps are not contiguous
            ConflictError: An ACTIVE run already exists for (lead, sequence)
        """
        sequence = await self.sequence_repo.get_sequence_with_steps(sequence_id)
        if not sequence or sequence["tenant_id"] != tenant_id:
            raise EntityNotFoundError("AutomationSequence", sequence_id)
        if not sequence["is_active"]:
            raise ValueError(f"Sequence {sequence_id} is not active")
        validate_step_orders(sequence["steps"])

        key = f"lead={lead_id}, sequence={sequence_id}"
        if await self.run_repo.find_active_run(lead_id, sequence_id):
            raise ConflictError("SequenceRun", key)

        tenant = await self.tenant_repo.get_settings(tenant_id)
        now = self.clock()
        next_fire_at = compute_fire_at(now, sequence["steps"][0], tenant.business_hours)

        try:
            async with self.db.begin_nested():
                run = await self.run_repo.create_run(
                    tenant_id=tenant_id,
                    lead_id=lead_id,
                    sequence_id=sequence_id,
                    next_fire_at=next_fire_at,
                    trigger_event=trigger_event,
                    started_at=now
                )
        except IntegrityError:
            # Lost a creation race; the partial unique index kept the invariant
            raise ConflictError("SequenceRun", key)

        logger.info(f"Started run {run['id']} for {key}, first fire at {next_fire_at.isoformat()}")
        return run

    # ============================================
    # CLAIM HOLDER OPERATIONS
    # ============================================

    async def claim(self, run: dict, worker_id: str, lease_seconds: int) -> int:
        """Claim a due run. Returns the claimed version; raises ClaimLostError."""
        now = self.clock()
        return await self.run_repo.claim(
            run_id=run["id"],
            expected_version=run["version"],
            worker_id=worker_id,
            now=now,
            lease_until=now + timedelta(seconds=lease_seconds)
        )

    async def advance(
        self,
        run: dict,
        version: int,
        dispatched_at: datetime,
        steps: List[dict],
        business_hours: BusinessHoursConfig
    ) -> dict:
        """
        Called after a step dispatch succeeded.

        Next step: next_fire_at = dispatched_at + delay (snapped if gated).
        No next step: status COMPLETED, next_fire_at NULL.

        Returns:
            The fields written plus the new "version".

        Raises:
            ClaimLostError: Run was paused/cancelled/modified during the dispatch.
        """
        next_index = run["current_step_index"] + 1
        values = self._advance_values(next_index, dispatched_at, steps, business_hours)
        new_version = await self.run_repo.update_claimed(run["id"], version, **values)
        values["version"] = new_version
        if values.get("status") == RunStatus.COMPLETED.value:
            logger.info(f"Run {run['id']} completed after {next_index} step(s)")
        else:
            logger.info(f"Run {run['id']} advanced to step {next_index}, next fire at {values['next_fire_at'].isoformat()}")
        return values

    async def record_sent_step(
        self,
        run: dict,
        dispatched_at: datetime,
        steps: List[dict],
        business_hours: BusinessHoursConfig
    ) -> bool:
        """
        Step pointer move for a send whose claim was lost to a pause or resume.
        The status is kept, except that sending the last step completes the run.

        Returns:
            False if the run was cancelled or already moved on.
        """
        next_index = run["current_step_index"] + 1
        values = self._advance_values(next_index, dispatched_at, steps, business_hours)
        moved = await self.run_repo.move_past_sent_step(run["id"], run["current_step_index"], **values)
        if moved:
            logger.info(f"Run {run['id']} moved past sent step {run['current_step_index']} after losing its claim")
        return moved

    def _advance_values(
        self,
        next_index: int,
        dispatched_at: datetime,
        steps: List[dict],
        business_hours: BusinessHoursConfig
    ) -> dict:
        if next_index < len(steps):
            return {
                "current_step_index": next_index,
                "next_fire_at": compute_fire_at(dispatched_at, steps[next_index], business_hours),
                "last_dispatched_at": dispatched_at,
                "claimed_by": None,
            }
        return {
            "current_step_index": next_index,
            "status": RunStatus.COMPLETED.value,
            "next_fire_at": None,
            "last_dispatched_at": dispatched_at,
            "completed_at": dispatched_at,
            "claimed_by": None,
        }

    async def reschedule(self, run_id: int, version: int, next_fire_at: datetime) -> int:
        """Same step, later (rate-limit denial, retry backoff, business-hours gate)."""
        return await self.run_repo.update_claimed(run_id, version, next_fire_at=next_fire_at, claimed_by=None)

    async def fail(self, run_id: int, version: int, reason: str) -> int:
        logger.warning(f"Run {run_id} FAILED: {reason}")
        return await self.run_repo.update_claimed(
            run_id, version,
            status=RunStatus.FAILED.value,
            next_fire_at=None,
            halt_reason=reason[:500],
            completed_at=self.clock(),
            claimed_by=None
        )

    async def cancel_claimed(self, run_id: int, version: int, reason: str) -> int:
        return await self.run_repo.update_claimed(
            run_id, version,
            status=RunStatus.CANCELLED.value,
            next_fire_at=None,
            halt_reason=reason,
            completed_at=self.clock(),
            claimed_by=None
        )

    # ============================================
    # ADMINISTRATIVE OPERATIONS
    # ============================================

    async def pause(self, run_id: int, reason: str) -> None:
        """
        ACTIVE -> PAUSED. next_fire_at is kept so resume() can honour it;
        claims only consider ACTIVE runs.
        """
        changed = await self.run_repo.change_status(
            run_id, [RunStatus.ACTIVE], RunStatus.PAUSED, halt_reason=reason, claimed_by=None
        )
        if not changed:
            await self._raise_for_status(run_id, "pause")
        logger.info(f"Run {run_id} paused: {reason}")

    async def cancel(self, run_id: int, reason: str) -> None:
        """ACTIVE or PAUSED -> CANCELLED. History is kept."""
        changed = await self.run_repo.change_status(
            run_id, [RunStatus.ACTIVE, RunStatus.PAUSED], RunStatus.CANCELLED,
            halt_reason=reason, next_fire_at=None, completed_at=self.clock(), claimed_by=None
        )
        if not changed:
            await self._raise_for_status(run_id, "cancel")
        logger.info(f"Run {run_id} cancelled: {reason}")

    async def resume(self, run_id: int) -> dict:
        """
        PAUSED -> ACTIVE with next_fire_at = max(existing, now), re-snapped if
        the current step is business-hours-only.

        Raises:
            ConflictError: Another ACTIVE run exists for the same (lead, sequence),
                or the run is not PAUSED
        """
        run = await self.run_repo.get_by_id(run_id)
        if not run:
            raise EntityNotFoundError("SequenceRun", run_id)
        if run["status"] != RunStatus.PAUSED.value:
            raise ConflictError("SequenceRun", str(run_id), message=f"Run {run_id} is {run['status']}, cannot resume")

        key = f"lead={run['lead_id']}, sequence={run['sequence_id']}"
        if await self.run_repo.find_active_run(run["lead_id"], run["sequence_id"]):
            raise ConflictError("SequenceRun", key)

        now = self.clock()
        next_fire_at = max(ensure_aware(run["next_fire_at"]), now) if run.get("next_fire_at") else now

        sequence = await self.sequence_repo.get_sequence_with_steps(run["sequence_id"])
        steps = sequence["steps"] if sequence else []
        if run["current_step_index"] < len(steps) and steps[run["current_step_index"]].get("business_hours_only"):
            tenant = await self.tenant_repo.get_settings(run["tenant_id"])
            next_fire_at = snap_to_business_hours(next_fire_at, tenant.business_hours)

        try:
            async with self.db.begin_nested():
                changed = await self.run_repo.change_status(
                    run_id, [RunStatus.PAUSED], RunStatus.ACTIVE, halt_reason=None, next_fire_at=next_fire_at
                )
        except IntegrityError:
            raise ConflictError("SequenceRun", key)
        if not changed:
            await self._raise_for_status(run_id, "resume")

        logger.info(f"Run {run_id} resumed, next fire at {next_fire_at.isoformat()}")
        return {**run, "status": RunStatus.ACTIVE.value, "next_fire_at": next_fire_at, "halt_reason": None}

    async def pause_active_runs_for_lead(self, lead_id: str, reason: str) -> List[int]:
        paused = []
        for run in await self.run_repo.find_runs_for_lead(lead_id, [RunStatus.ACTIVE]):
            if await self.run_repo.change_status(
                run["id"], [RunStatus.ACTIVE], RunStatus.PAUSED, halt_reason=reason, claimed_by=None
            ):
                paused.append(run["id"])
        if paused:
            logger.info(f"Paused runs {paused} for lead {lead_id}: {reason}")
        return paused

    async def cancel_runs_for_lead(self, lead_id: str, reason: str) -> List[int]:
        cancelled = []
        for run in await self.run_repo.find_runs_for_lead(lead_id, [RunStatus.ACTIVE, RunStatus.PAUSED]):
            if await self.run_repo.change_status(
                run["id"], [RunStatus.ACTIVE, RunStatus.PAUSED], RunStatus.CANCELLED,
                halt_reason=reason, next_fire_at=None, completed_at=self.clock(), claimed_by=None
            ):
                cancelled.append(run["id"])
        if cancelled:
            logger.info(f"Cancelled runs {cancelled} for lead {lead_id}: {reason}")
        return cancelled

    async def _raise_for_status(self, run_id: int, action: str) -> None:
        run = await self.run_repo.get_by_id(run_id)
        if not run:
            raise EntityNotFoundError("SequenceRun", run_id)
        raise ConflictError("SequenceRun", str(run_id), message=f"Run {run_id} is {run['status']}, cannot {action}")
