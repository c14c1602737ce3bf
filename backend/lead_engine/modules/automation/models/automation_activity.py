"""
Automation Activity ORM Model
SQLAlchemy model representing the 'automation_activities' table.

Outbox of domain events for the CRM/Activity collaborator
(REPLY, STAGE_AUTO_ADVANCE). Rows are written in the same transaction as
the state change that caused them; published_at is set once subscribers
have been notified.
"""
from sqlalchemy import Column, BigInteger, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from lead_engine.shared.db.base import Base


class AutomationActivity(Base):
    __tablename__ = "automation_activities"

    id = Column(BigInteger, primary_key=True)

    tenant_id = Column(Text, nullable=True)
    lead_id = Column(Text, nullable=True)   # NULL when the sender matched no lead

    activity_type = Column(Text, nullable=False)  # REPLY / STAGE_AUTO_ADVANCE
    extra_data = Column(JSONB, nullable=True, server_default='{}')
    # Example extra_data: { "message_log_id": 12, "from": "919876543210", "stage": "CONTACTED" }

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    published_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_automation_activities_lead', 'lead_id'),
        Index('idx_automation_activities_unpublished', 'published_at'),
    )

    def __repr__(self):
        return f"<AutomationActivity(id={self.id}, type='{self.activity_type}', lead_id='{self.lead_id}')>"
