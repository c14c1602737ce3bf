"""
Sequence Run Repository
Database operations for the sequence_runs table.

OPTIMISTIC LOCKING: claims and every later write by the claiming worker are
conditional UPDATEs on (id, version, status='ACTIVE'). A write that matches
no row raises ClaimLostError.

NOTE: Methods do NOT commit. The calling service owns the transaction.
"""
from datetime import datetime
from typing import Optional, List, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.models.sequence_run import SequenceRun
from lead_engine.modules.automation.constants import RunStatus
from lead_engine.shared.utils.exceptions import ClaimLostError


def _row_to_dict(obj) -> dict:
    return {k: v for k, v in obj.__dict__.items() if not k.startswith('_')}


class SequenceRunRepository:
    """Repository for Sequence Runs with compare-and-swap updates."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ============================================
    # READ OPERATIONS
    # ============================================

    async def get_by_id(self, run_id: int) -> Optional[dict]:
        result = await self.db.execute(select(SequenceRun).where(SequenceRun.id == run_id))
        run = result.scalar_one_or_none()
        return _row_to_dict(run) if run else None

    async def find_active_run(self, lead_id: str, sequence_id: int) -> Optional[dict]:
        result = await self.db.execute(
            select(SequenceRun).where(
                SequenceRun.lead_id == lead_id,
                SequenceRun.sequence_id == sequence_id,
                SequenceRun.status == RunStatus.ACTIVE.value
            )
        )
        run = result.scalar_one_or_none()
        return _row_to_dict(run) if run else None

    async def find_runs_for_lead(self, lead_id: str, statuses: Iterable[RunStatus]) -> List[dict]:
        result = await self.db.execute(
            select(SequenceRun)
            .where(
                SequenceRun.lead_id == lead_id,
                SequenceRun.status.in_([s.value for s in statuses])
            )
            .order_by(SequenceRun.id)
        )
        return [_row_to_dict(r) for r in result.scalars().all()]

    async def find_due_runs(self, now: datetime, limit: int) -> List[dict]:
        """ACTIVE runs whose next_fire_at has passed, oldest first."""
        result = await self.db.execute(
            select(SequenceRun)
            .where(
                SequenceRun.status == RunStatus.ACTIVE.value,
                SequenceRun.next_fire_at.is_not(None),
                SequenceRun.next_fire_at <= now
            )
            .order_by(SequenceRun.next_fire_at, SequenceRun.id)
            .limit(limit)
        )
        return [_row_to_dict(r) for r in result.scalars().all()]

    # ============================================
    # WRITE OPERATIONS
    # ============================================

    async def create_run(
        self,
        tenant_id: str,
        lead_id: str,
        sequence_id: int,
        next_fire_at: Optional[datetime],
        trigger_event: Optional[str] = None,
        started_at: Optional[datetime] = None
    ) -> dict:
        """
        Insert an ACTIVE run. The partial unique index raises IntegrityError
        if another ACTIVE run for (lead, sequence) slipped in concurrently.
        """
        run = SequenceRun(
            tenant_id=tenant_id,
            lead_id=lead_id,
            sequence_id=sequence_id,
            trigger_event=trigger_event,
            current_step_index=0,
            next_fire_at=next_fire_at,
            status=RunStatus.ACTIVE.value,
            version=0,
            started_at=started_at
        )
        self.db.add(run)
        await self.db.flush()
        return _row_to_dict(run)

    async def claim(
        self,
        run_id: int,
        expected_version: int,
        worker_id: str,
        now: datetime,
        lease_until: datetime
    ) -> int:
        """
        Exclusively claim a due run.

        Pushes next_fire_at out to lease_until so the run is not due for other
        workers while this one dispatches, and becomes due again by itself if
        this worker dies.

        Returns:
            The new version held by this worker.

        Raises:
            ClaimLostError: Version moved, run left ACTIVE, or it is no longer due.
        """
        result = await self.db.execute(
            update(SequenceRun)
            .where(
                SequenceRun.id == run_id,
                SequenceRun.version == expected_version,
                SequenceRun.status == RunStatus.ACTIVE.value,
                SequenceRun.next_fire_at <= now
            )
            .values(
                version=SequenceRun.version + 1,
                claimed_by=worker_id,
                claimed_at=now,
                next_fire_at=lease_until
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ClaimLostError(run_id)
        return expected_version + 1

    async def update_claimed(self, run_id: int, expected_version: int, **values) -> int:
        """
        Write by the worker holding the claim (advance, reschedule, fail).
        Only succeeds while the run is still ACTIVE at the claimed version.

        Returns:
            The new version.

        Raises:
            ClaimLostError: Run was paused/cancelled or modified meanwhile.
        """
        result = await self.db.execute(
            update(SequenceRun)
            .where(
                SequenceRun.id == run_id,
                SequenceRun.version == expected_version,
                SequenceRun.status == RunStatus.ACTIVE.value
            )
            .values(version=SequenceRun.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ClaimLostError(run_id)
        return expected_version + 1

    async def change_status(
        self,
        run_id: int,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        **values
    ) -> bool:
        """
        Administrative status change (pause, cancel, resume).
        Bumps version so any in-flight claim holder loses its next write.

        Returns:
            True if the run was in one of from_statuses and was updated.
        """
        result = await self.db.execute(
            update(SequenceRun)
            .where(
                SequenceRun.id == run_id,
                SequenceRun.status.in_([s.value for s in from_statuses])
            )
            .values(version=SequenceRun.version + 1, status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def move_past_sent_step(self, run_id: int, step_index: int, **values) -> bool:
        """
        Record a step the provider accepted after the claim was lost (run
        paused or resumed mid-send). Matches ACTIVE or PAUSED runs still on
        step_index, whatever their version, so a resume never resends it.

        Returns:
            True if the run was still on that step and was updated.
        """
        result = await self.db.execute(
            update(SequenceRun)
            .where(
                SequenceRun.id == run_id,
                SequenceRun.current_step_index == step_index,
                SequenceRun.status.in_([RunStatus.ACTIVE.value, RunStatus.PAUSED.value])
            )
            .values(version=SequenceRun.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
