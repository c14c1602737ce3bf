"""
Automation Activity Repository
Outbox rows for REPLY / STAGE_AUTO_ADVANCE domain events.

NOTE: Methods do NOT commit. The calling service owns the transaction.
"""
from datetime import datetime
from typing import Optional, List

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.models.automation_activity import AutomationActivity


def _row_to_dict(obj) -> dict:
    return {k: v for k, v in obj.__dict__.items() if not k.startswith('_')}


class ActivityRepository:
    """Repository for the automation activity outbox."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create_activity(
        self,
        activity_type: str,
        tenant_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        extra_data: Optional[dict] = None
    ) -> dict:
        activity = AutomationActivity(
            tenant_id=tenant_id,
            lead_id=lead_id,
            activity_type=activity_type,
            extra_data=extra_data or {}
        )
        self.db.add(activity)
        await self.db.flush()
        return _row_to_dict(activity)

    async def mark_published(self, activity_ids: List[int], published_at: datetime) -> None:
        if not activity_ids:
            return
        await self.db.execute(
            update(AutomationActivity)
            .where(AutomationActivity.id.in_(activity_ids))
            .values(published_at=published_at)
            .execution_options(synchronize_session=False)
        )
