"""
Webhook Event Repository
Dedupe ledger for provider callbacks.
"""
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.models.webhook_event import WebhookEvent


class WebhookEventRepository:

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def record_if_new(
        self,
        provider: str,
        event_id: str,
        kind: str,
        payload: Optional[dict] = None
    ) -> bool:
        """
        Insert the (provider, event_id) pair.

        Returns:
            True for a first delivery, False for a redelivery (no row inserted).
        """
        stmt = (
            insert(WebhookEvent)
            .values(provider=provider, event_id=event_id, kind=kind, payload=payload or {})
            .on_conflict_do_nothing(index_elements=["provider", "event_id"])
            .returning(WebhookEvent.id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

