"""
Sequence Run ORM Model
SQLAlchemy model representing the 'sequence_runs' table.

One execution of a Sequence against one lead.

OPTIMISTIC LOCKING: every claim/advance/reschedule is a conditional UPDATE
on (id, version, status). The winner bumps version; losers match no row.
"""
from sqlalchemy import Column, BigInteger, Text, Integer, DateTime, Index, ForeignKey, text
from sqlalchemy.sql import func
from lead_engine.shared.db.base import Base


class SequenceRun(Base):
    """
    ORM Model for the sequence_runs table.

    next_fire_at NULL means no more steps (completed) or halted.
    While a worker holds a claim, next_fire_at is pushed out by the claim
    lease, so a crashed worker's run becomes due again on its own.
    """
    __tablename__ = "sequence_runs"

    id = Column(BigInteger, primary_key=True)

    tenant_id = Column(Text, nullable=False)
    lead_id = Column(Text, nullable=False)
    sequence_id = Column(
        BigInteger,
        ForeignKey('automation_sequences.id'),
        nullable=False
    )
    trigger_event = Column(Text, nullable=True)

    # ============================================
    # SCHEDULING STATE
    # ============================================
    current_step_index = Column(Integer, nullable=False, default=0)   # 0-based index into steps
    next_fire_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(Text, nullable=False, default='ACTIVE')            # ACTIVE/PAUSED/COMPLETED/CANCELLED/FAILED
    halt_reason = Column(Text, nullable=True)                          # Why paused/cancelled/failed

    # ============================================
    # CLAIM TRACKING
    # ============================================
    version = Column(Integer, nullable=False, default=0)
    claimed_by = Column(Text, nullable=True)                           # Worker id of last claimant
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    last_dispatched_at = Column(DateTime(timezone=True), nullable=True)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        # At most one ACTIVE run per (lead, sequence)
        Index(
            'uq_sequence_runs_active_lead_sequence',
            'lead_id', 'sequence_id',
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index('idx_sequence_runs_due', 'status', 'next_fire_at'),
        Index('idx_sequence_runs_lead', 'lead_id'),
    )

    def __repr__(self):
        return f"<SequenceRun(id={self.id}, lead_id='{self.lead_id}', step={self.current_step_index}, status='{self.status}')>"
