"""
Trigger Listener
Turns lead lifecycle events into Sequence Runs.

- MANUAL: start the given sequence
- LEAD_CREATED / STAGE_CHANGED with sequenceId: start that sequence
- LEAD_CREATED / STAGE_CHANGED without sequenceId: start every active
  sequence of the tenant listening for that trigger (and stage)
- lead deleted / reassigned: cancel the lead's runs

A conflict on one sequence (run already ACTIVE) does not block the others.
After a commit that created runs, the scheduler is woken so step 0 does not
wait for the next tick.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.schemas.automation_schemas import LeadLifecycleEvent, TriggerEvent
from lead_engine.modules.automation.services.sequence_run_manager import SequenceRunManager
from lead_engine.shared.utils.exceptions import ConflictError, EntityNotFoundError

logger = logging.getLogger("trigger_listener")


class TriggerListener:

    def __init__(self, db: AsyncSession, wake_scheduler: Optional[Callable[[], None]] = None):
        self.db = db
        self.run_manager = SequenceRunManager(db)
        self.wake_scheduler = wake_scheduler

    async def handle_trigger(self, event: TriggerEvent) -> Dict[str, Any]:
        """
        Returns:
            {"created_run_ids": [...], "skipped": [{"sequence_id", "reason"}]}

        Raises:
            ConflictError / EntityNotFoundError / ValueError: only for an explicit
            sequenceId, where the caller asked for that one sequence
        """
        if event.sequence_id is not None:
            sequence_ids = [event.sequence_id]
        else:
            sequence_ids = await self.run_manager.sequence_repo.get_active_sequence_ids_for_trigger(
                event.tenant_id, event.trigger_kind, event.stage
            )

        created: List[int] = []
        skipped: List[Dict[str, Any]] = []
        explicit = event.sequence_id is not None
        try:
            for sequence_id in sequence_ids:
                try:
                    run = await self.run_manager.start(
                        event.tenant_id, event.lead_id, sequence_id, trigger_event=event.trigger_kind.value
                    )
                    created.append(run["id"])
                except (ConflictError, EntityNotFoundError, ValueError) as e:
                    if explicit:
                        raise
                    skipped.append({"sequence_id": sequence_id, "reason": str(e)})
                    logger.info(f"Skipped sequence {sequence_id} for lead {event.lead_id}: {e}")
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if created:
            logger.info(f"{event.trigger_kind.value} for lead {event.lead_id} started runs {created}")
            if self.wake_scheduler:
                self.wake_scheduler()
        elif not sequence_ids:
            logger.info(f"No active sequences for {event.trigger_kind.value} (tenant={event.tenant_id}, stage={event.stage})")

        return {"created_run_ids": created, "skipped": skipped}

    async def handle_lead_removed(self, event: LeadLifecycleEvent) -> List[int]:
        """Lead deleted or reassigned away from automation: cancel its runs."""
        try:
            cancelled = await self.run_manager.cancel_runs_for_lead(event.lead_id, event.reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return cancelled
