"""
Sequence Repository
Read access to sequences, their ordered steps, and message templates.
"""
from typing import Optional, List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.models.sequence import AutomationSequence, AutomationStep
from lead_engine.modules.automation.models.message_template import MessageTemplate
from lead_engine.modules.automation.constants import TriggerKind


def _row_to_dict(obj) -> dict:
    return {k: v for k, v in obj.__dict__.items() if not k.startswith('_')}


class SequenceRepository:
    """Repository for automation sequences and templates."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get_sequence_with_steps(self, sequence_id: int) -> Optional[dict]:
        """
        Get a sequence and its steps ordered by step_order.
        Steps are returned under the "steps" key as a list of dicts.
        """
        result = await self.db.execute(
            select(AutomationSequence).where(AutomationSequence.id == sequence_id)
        )
        sequence = result.scalar_one_or_none()
        if not sequence:
            return None

        steps_result = await self.db.execute(
            select(AutomationStep)
            .where(AutomationStep.sequence_id == sequence_id)
            .order_by(AutomationStep.step_order)
        )
        data = _row_to_dict(sequence)
        data.pop("steps", None)
        data["steps"] = [
            {k: v for k, v in _row_to_dict(s).items() if k != "sequence"}
            for s in steps_result.scalars().all()
        ]
        return data

    async def get_active_sequence_ids_for_trigger(
        self,
        tenant_id: str,
        trigger_event: TriggerKind,
        stage: Optional[str] = None
    ) -> List[int]:
        """
        Active sequences of a tenant that listen for this trigger.
        For STAGE_CHANGED, trigger_stage must match the new stage.
        """
        query = select(AutomationSequence.id).where(
            AutomationSequence.tenant_id == tenant_id,
            AutomationSequence.trigger_event == trigger_event.value,
            AutomationSequence.is_active == True
        )
        if trigger_event == TriggerKind.STAGE_CHANGED:
            query = query.where(AutomationSequence.trigger_stage == stage)

        result = await self.db.execute(query.order_by(AutomationSequence.id))
        return list(result.scalars().all())

    async def get_template(self, template_id: int) -> Optional[dict]:
        result = await self.db.execute(
            select(MessageTemplate).where(MessageTemplate.id == template_id)
        )
        template = result.scalar_one_or_none()
        return _row_to_dict(template) if template else None
