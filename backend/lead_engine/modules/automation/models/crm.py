"""
Read-only views of collaborator tables.

Leads, projects, users and per-tenant messaging settings are owned by the
CRM side; this subsystem only reads them (lead matching, template
bindings, provider/rate-limit/business-hours configuration). They are
excluded from this package's migrations.
"""
from sqlalchemy import Column, Text, Integer, Boolean, JSON
from lead_engine.shared.db.base import Base


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = {"info": {"skip_autogenerate": True}}

    id = Column(Text, primary_key=True)
    builder_id = Column(Text, nullable=False)   # Tenant
    project_id = Column(Text, nullable=True)
    assigned_to = Column(Text, nullable=True)
    name = Column(Text, nullable=False)
    phone = Column(Text, nullable=False)        # E.164
    email = Column(Text, nullable=True)
    stage = Column(Text, nullable=True)


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = {"info": {"skip_autogenerate": True}}

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)


class User(Base):
    __tablename__ = "users"
    __table_args__ = {"info": {"skip_autogenerate": True}}

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)


class TenantMessagingConfig(Base):
    """
    Per-tenant WhatsApp settings. NULL columns fall back to application settings.
    """
    __tablename__ = "tenant_messaging_configs"
    __table_args__ = {"info": {"skip_autogenerate": True}}

    builder_id = Column(Text, primary_key=True)
    provider = Column(Text, nullable=True)
    phone_number = Column(Text, nullable=True)         # Sender
    account_sid = Column(Text, nullable=True)          # Twilio SID or UltraMsg instance
    api_key = Column(Text, nullable=True)              # Twilio auth token or UltraMsg token
    rate_per_second = Column(Integer, nullable=True)
    rate_per_minute = Column(Integer, nullable=True)
    rate_per_hour = Column(Integer, nullable=True)
    business_hours_start = Column(Text, nullable=True)   # "HH:MM"
    business_hours_end = Column(Text, nullable=True)
    business_hours_timezone = Column(Text, nullable=True)
    business_days = Column(JSON, nullable=True)          # ["MONDAY", ...]
    is_active = Column(Boolean, nullable=False, default=True)
