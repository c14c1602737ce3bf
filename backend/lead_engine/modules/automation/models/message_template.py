"""
Message Template ORM Model
Raw content with {{variable}} placeholders plus the declared variable names.
"""
from sqlalchemy import Column, BigInteger, Text, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from lead_engine.shared.db.base import Base


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    id = Column(BigInteger, primary_key=True)
    tenant_id = Column(Text, nullable=False)

    name = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    variables = Column(JSONB, nullable=False, server_default='[]')  # e.g. ["name", "project", "agent"]
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('idx_message_templates_tenant', 'tenant_id'),
    )

    def __repr__(self):
        return f"<MessageTemplate(id={self.id}, name='{self.name}')>"
