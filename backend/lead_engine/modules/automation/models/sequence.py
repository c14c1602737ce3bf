"""
Automation Sequence ORM Models
SQLAlchemy models for the 'automation_sequences' and 'automation_steps' tables.

A Sequence is a strictly linear, ordered list of Steps. Runs address steps by
index into that list, so step_order must be contiguous from 1.
"""
from sqlalchemy import Column, BigInteger, Text, Boolean, Integer, DateTime, Index, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from lead_engine.shared.db.base import Base


class AutomationSequence(Base):
    """
    ORM Model for the automation_sequences table.

    Tenant-scoped. Immutable once referenced by a running Sequence Run,
    except for toggling is_active.
    """
    __tablename__ = "automation_sequences"

    id = Column(BigInteger, primary_key=True)
    tenant_id = Column(Text, nullable=False)

    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    # ============================================
    # TRIGGER
    # ============================================
    trigger_event = Column(Text, nullable=False)   # LEAD_CREATED / STAGE_CHANGED / MANUAL
    trigger_stage = Column(Text, nullable=True)    # Only for STAGE_CHANGED

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    steps = relationship(
        "AutomationStep",
        order_by="AutomationStep.step_order",
        back_populates="sequence",
        lazy="selectin",
    )

    __table_args__ = (
        Index('idx_automation_sequences_tenant_trigger', 'tenant_id', 'trigger_event'),
    )

    def __repr__(self):
        return f"<AutomationSequence(id={self.id}, name='{self.name}', trigger='{self.trigger_event}')>"


class AutomationStep(Base):
    """
    ORM Model for the automation_steps table.

    delay_hours is measured from the previous step's dispatch time
    (or run start for the first step).
    """
    __tablename__ = "automation_steps"

    id = Column(BigInteger, primary_key=True)
    sequence_id = Column(
        BigInteger,
        ForeignKey('automation_sequences.id', ondelete='CASCADE'),
        nullable=False
    )
    template_id = Column(
        BigInteger,
        ForeignKey('message_templates.id'),
        nullable=False
    )

    delay_hours = Column(Integer, nullable=False, default=0)
    business_hours_only = Column(Boolean, nullable=False, default=False)
    step_order = Column(Integer, nullable=False)   # 1-based, contiguous within a sequence

    sequence = relationship("AutomationSequence", back_populates="steps")

    __table_args__ = (
        UniqueConstraint('sequence_id', 'step_order', name='uq_automation_steps_sequence_order'),
        CheckConstraint('delay_hours >= 0', name='ck_automation_steps_delay_non_negative'),
        CheckConstraint('step_order >= 1', name='ck_automation_steps_order_positive'),
    )

    def __repr__(self):
        return f"<AutomationStep(id={self.id}, sequence_id={self.sequence_id}, order={self.step_order})>"
