"""
Message Log Repository
Database operations for the message_logs table.

Status writes are conditional: UPDATE ... WHERE status IN (allowed predecessors).
A duplicate or out-of-order update matches no row and is a no-op, so status
never regresses even when two writers race.

NOTE: Methods do NOT commit. The calling service owns the transaction.
"""
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.models.message_log import MessageLog
from lead_engine.modules.automation.constants import (
    ALLOWED_PREDECESSORS,
    MessageDirection,
    MessageStatus,
)

# Timestamp column stamped when an entry reaches each status
_STATUS_TIMESTAMP = {
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.READ: "read_at",
    MessageStatus.REPLIED: "replied_at",
    MessageStatus.FAILED: "failed_at",
}


def _row_to_dict(obj) -> dict:
    return {k: v for k, v in obj.__dict__.items() if not k.startswith('_')}


class MessageLogRepository:
    """Repository for the append-only message log."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ============================================
    # READ OPERATIONS
    # ============================================

    async def get_by_provider_message_id(self, provider: str, provider_message_id: str) -> Optional[dict]:
        result = await self.db.execute(
            select(MessageLog)
            .where(
                MessageLog.provider == provider,
                MessageLog.provider_message_id == provider_message_id,
                MessageLog.direction == MessageDirection.OUTBOUND.value
            )
            .order_by(MessageLog.id.desc())
            .limit(1)
        )
        entry = result.scalar_one_or_none()
        return _row_to_dict(entry) if entry else None

    async def find_open_attempt(self, run_id: int, step_index: int) -> Optional[dict]:
        """Latest PENDING or QUEUED attempt for (run, step), if any."""
        result = await self.db.execute(
            select(MessageLog)
            .where(
                MessageLog.run_id == run_id,
                MessageLog.step_index == step_index,
                MessageLog.status.in_([MessageStatus.PENDING.value, MessageStatus.QUEUED.value])
            )
            .order_by(MessageLog.id.desc())
            .limit(1)
        )
        entry = result.scalar_one_or_none()
        return _row_to_dict(entry) if entry else None

    async def get_max_attempt(self, run_id: int, step_index: int) -> int:
        result = await self.db.execute(
            select(func.max(MessageLog.attempt)).where(
                MessageLog.run_id == run_id,
                MessageLog.step_index == step_index
            )
        )
        return result.scalar() or 0

    async def find_latest_sent_outbound(self, lead_id: str) -> Optional[dict]:
        """
        Most recent outbound entry for a lead that left the worker
        (SENT or later, including FAILED after send).
        """
        result = await self.db.execute(
            select(MessageLog)
            .where(
                MessageLog.lead_id == lead_id,
                MessageLog.direction == MessageDirection.OUTBOUND.value,
                MessageLog.sent_at.is_not(None)
            )
            .order_by(MessageLog.sent_at.desc(), MessageLog.id.desc())
            .limit(1)
        )
        entry = result.scalar_one_or_none()
        return _row_to_dict(entry) if entry else None

    async def list_for_run(self, run_id: int) -> List[dict]:
        result = await self.db.execute(
            select(MessageLog).where(MessageLog.run_id == run_id).order_by(MessageLog.id)
        )
        return [_row_to_dict(m) for m in result.scalars().all()]

    # ============================================
    # WRITE OPERATIONS
    # ============================================

    async def create_outbound_attempt(
        self,
        tenant_id: str,
        lead_id: str,
        run_id: int,
        sequence_id: int,
        step_index: int,
        template_id: Optional[int],
        provider: str,
        attempt: int,
        to_number: Optional[str] = None
    ) -> dict:
        """New PENDING attempt for a (run, step)."""
        entry = MessageLog(
            tenant_id=tenant_id,
            lead_id=lead_id,
            run_id=run_id,
            sequence_id=sequence_id,
            step_index=step_index,
            template_id=template_id,
            attempt=attempt,
            direction=MessageDirection.OUTBOUND.value,
            provider=provider,
            status=MessageStatus.PENDING.value,
            to_number=to_number
        )
        self.db.add(entry)
        await self.db.flush()  # Flush to get ID, let service manage commit
        return _row_to_dict(entry)

    async def create_inbound(
        self,
        tenant_id: str,
        lead_id: Optional[str],
        provider: str,
        body: str,
        from_number: str,
        to_number: str,
        provider_message_id: Optional[str],
        received_at: datetime
    ) -> dict:
        entry = MessageLog(
            tenant_id=tenant_id,
            lead_id=lead_id,
            direction=MessageDirection.INBOUND.value,
            provider=provider,
            status=MessageStatus.RECEIVED.value,
            content=body,
            from_number=from_number,
            to_number=to_number,
            provider_message_id=provider_message_id,
            created_at=received_at
        )
        self.db.add(entry)
        await self.db.flush()
        return _row_to_dict(entry)

    async def transition(
        self,
        log_id: int,
        target: MessageStatus,
        at: Optional[datetime] = None,
        **values
    ) -> bool:
        """
        Move an entry forward to target if its current status allows it.

        Args:
            log_id: Message log id
            target: New status
            at: Timestamp for the status column (sent_at, delivered_at, ...)
            values: Extra columns (content, provider_message_id, error_kind, error_message)

        Returns:
            True if the row moved; False if the move would regress or repeat.
        """
        allowed = ALLOWED_PREDECESSORS.get(target)
        if not allowed:
            return False

        timestamp_column = _STATUS_TIMESTAMP.get(target)
        if timestamp_column and at is not None:
            values[timestamp_column] = at

        result = await self.db.execute(
            update(MessageLog)
            .where(
                MessageLog.id == log_id,
                MessageLog.status.in_([s.value for s in allowed])
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def set_content(self, log_id: int, content: str) -> None:
        await self.db.execute(
            update(MessageLog)
            .where(MessageLog.id == log_id)
            .values(content=content)
            .execution_options(synchronize_session=False)
        )
