"""
Webhook Event ORM Model
Dedupe ledger for provider callbacks. Providers redeliver; the unique
(provider, event_id) key turns repeats into no-ops.
"""
from sqlalchemy import Column, BigInteger, Text, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from lead_engine.shared.db.base import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(BigInteger, primary_key=True)
    provider = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)               # INBOUND / STATUS
    payload = Column(JSONB, nullable=True, server_default='{}')
    received_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
    )

    def __repr__(self):
        return f"<WebhookEvent(provider='{self.provider}', event_id='{self.event_id}')>"
