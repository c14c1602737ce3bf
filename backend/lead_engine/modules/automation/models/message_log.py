"""
Message Log ORM Model
SQLAlchemy model representing the 'message_logs' table.

One row per send attempt (not per logical message) plus one row per inbound
message. Rows are append-only; only status and its timestamps change, and
status only moves forward.
"""
from sqlalchemy import Column, BigInteger, Text, Integer, DateTime, Index, ForeignKey, text
from sqlalchemy.sql import func
from lead_engine.shared.db.base import Base


class MessageLog(Base):
    __tablename__ = "message_logs"

    id = Column(BigInteger, primary_key=True)

    tenant_id = Column(Text, nullable=True)  # NULL for inbound to an unknown sender number
    lead_id = Column(Text, nullable=True)    # NULL for inbound from unknown numbers

    # ============================================
    # RUN LINK (outbound sequence messages only)
    # ============================================
    run_id = Column(BigInteger, ForeignKey('sequence_runs.id'), nullable=True)
    sequence_id = Column(BigInteger, nullable=True)
    step_index = Column(Integer, nullable=True)
    template_id = Column(BigInteger, nullable=True)
    attempt = Column(Integer, nullable=False, default=1)

    # ============================================
    # MESSAGE
    # ============================================
    direction = Column(Text, nullable=False)          # OUTBOUND / INBOUND
    provider = Column(Text, nullable=False)           # TWILIO / ULTRAMSG / MOCK
    status = Column(Text, nullable=False, default='PENDING')
    content = Column(Text, nullable=True)             # Rendered text (NULL until rendered)
    from_number = Column(Text, nullable=True)
    to_number = Column(Text, nullable=True)
    provider_message_id = Column(Text, nullable=True)

    # ============================================
    # ERROR DETAIL
    # ============================================
    error_kind = Column(Text, nullable=True)          # RENDER / TRANSIENT / PERMANENT / DELIVERY
    error_message = Column(Text, nullable=True)

    # ============================================
    # TIMESTAMPS
    # ============================================
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    replied_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        # At most one attempt QUEUED per (run, step)
        Index(
            'uq_message_logs_queued_run_step',
            'run_id', 'step_index',
            unique=True,
            postgresql_where=text("status = 'QUEUED'"),
        ),
        Index('idx_message_logs_run_step', 'run_id', 'step_index'),
        Index('idx_message_logs_provider_id', 'provider', 'provider_message_id'),
        Index('idx_message_logs_lead_direction', 'lead_id', 'direction', 'created_at'),
    )

    def __repr__(self):
        return f"<MessageLog(id={self.id}, run_id={self.run_id}, step={self.step_index}, status='{self.status}')>"
