"""
Automation - Pydantic Schemas
Boundary shapes (trigger events, webhooks, tenant config) and API responses.
"""
from datetime import datetime, time
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lead_engine.modules.automation.constants import (
    HALT_REASON_LEAD_DELETED,
    HALT_REASON_LEAD_REASSIGNED,
    MessageStatus,
    ProviderName,
    TriggerKind,
)

WEEKDAYS = ["MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY"]


# ============================================
# TENANT CONFIGURATION (read-only inputs)
# ============================================

class RateLimitConfig(BaseModel):
    """Per tenant+provider ceilings. A ceiling of 0 disables that window."""
    model_config = ConfigDict(populate_by_name=True)

    per_second: int = Field(default=1, ge=0, alias="perSecond")
    per_minute: int = Field(default=30, ge=0, alias="perMinute")
    per_hour: int = Field(default=1000, ge=0, alias="perHour")


class BusinessHoursConfig(BaseModel):
    """Daily send window [start_time, end_time) in a timezone, on active weekdays."""
    model_config = ConfigDict(populate_by_name=True)

    start_time: time = Field(default=time(9, 0), alias="startTime")
    end_time: time = Field(default=time(18, 0), alias="endTime")
    timezone: str = "UTC"
    active_days: List[str] = Field(
        default_factory=lambda: WEEKDAYS[:5],
        alias="activeDays"
    )

    @field_validator("active_days")
    @classmethod
    def validate_days(cls, v: List[str]) -> List[str]:
        days = [d.strip().upper() for d in v]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {', '.join(unknown)}")
        if not days:
            raise ValueError("At least one active day is required")
        return days

    @model_validator(mode="after")
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError("startTime must be before endTime")
        return self

    @property
    def active_weekday_numbers(self) -> List[int]:
        """Monday=0 ... Sunday=6, as used by datetime.weekday()."""
        return sorted(WEEKDAYS.index(d) for d in self.active_days)


class TenantMessagingSettings(BaseModel):
    """Resolved per-tenant settings (tenant row merged over application defaults)."""
    tenant_id: str
    provider: ProviderName = ProviderName.MOCK
    sender_number: str = ""
    account_id: str = ""
    api_key: str = ""
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    business_hours: BusinessHoursConfig = Field(default_factory=BusinessHoursConfig)


# ============================================
# TRIGGER EVENTS
# ============================================

class TriggerEvent(BaseModel):
    """Lead lifecycle event that may start Sequence Runs."""
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., min_length=1, alias="tenantId")
    lead_id: str = Field(..., min_length=1, alias="leadId")
    sequence_id: Optional[int] = Field(default=None, alias="sequenceId")
    trigger_kind: TriggerKind = Field(..., alias="triggerKind")
    stage: Optional[str] = None  # New stage for STAGE_CHANGED

    @model_validator(mode="after")
    def validate_trigger(self):
        if self.trigger_kind == TriggerKind.MANUAL and self.sequence_id is None:
            raise ValueError("sequenceId is required for MANUAL triggers")
        if self.trigger_kind == TriggerKind.STAGE_CHANGED and not self.stage and self.sequence_id is None:
            raise ValueError("stage or sequenceId is required for STAGE_CHANGED triggers")
        return self


class LeadLifecycleEvent(BaseModel):
    """Lead deleted or reassigned away from automation."""
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId")
    lead_id: str = Field(..., alias="leadId")
    reason: str = Field(default=HALT_REASON_LEAD_DELETED)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        if v not in (HALT_REASON_LEAD_DELETED, HALT_REASON_LEAD_REASSIGNED):
            raise ValueError(f"reason must be {HALT_REASON_LEAD_DELETED} or {HALT_REASON_LEAD_REASSIGNED}")
        return v


# ============================================
# NORMALIZED PROVIDER CALLBACKS
# ============================================

class InboundMessage(BaseModel):
    """Inbound message from a lead, after provider-specific parsing."""
    provider: ProviderName
    provider_event_id: str
    from_number: str          # Normalized E.164 digits (no "+")
    to_number: str = ""
    body: str = ""
    provider_message_id: Optional[str] = None
    received_at: Optional[datetime] = None


class StatusUpdate(BaseModel):
    """Delivery status change for an outbound message."""
    provider: ProviderName
    provider_message_id: str
    status: MessageStatus
    timestamp: Optional[datetime] = None
    provider_event_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def dedupe_key(self) -> str:
        if self.provider_event_id:
            return self.provider_event_id
        ts = self.timestamp.isoformat() if self.timestamp else ""
        return f"{self.provider_message_id}:{self.status.value}:{ts}"


# ============================================
# CANONICAL WEBHOOK SHAPES
# ============================================

class InboundWebhookPayload(BaseModel):
    """{from, to, body, providerEventId}"""
    model_config = ConfigDict(populate_by_name=True)

    from_number: str = Field(..., min_length=1, alias="from")
    to_number: str = Field(default="", alias="to")
    body: str = ""
    provider_event_id: str = Field(..., min_length=1, alias="providerEventId")


class StatusWebhookPayload(BaseModel):
    """{providerMessageId, status, timestamp}"""
    model_config = ConfigDict(populate_by_name=True)

    provider_message_id: str = Field(..., min_length=1, alias="providerMessageId")
    status: str
    timestamp: Optional[datetime] = None
    provider_event_id: Optional[str] = Field(default=None, alias="providerEventId")


# ============================================
# RATE LIMITER
# ============================================

class AcquireResult(BaseModel):
    granted: bool
    retry_after: float = 0.0  # Seconds; 0 when granted


# ============================================
# REQUEST / RESPONSE MODELS
# ============================================

class RunActionRequest(BaseModel):
    reason: str = Field(default="manual", min_length=1, max_length=200)


class TriggerResponse(BaseModel):
    success: bool
    created_run_ids: List[int] = []
    skipped: List[Dict[str, Any]] = []


class MessageLogItem(BaseModel):
    id: int
    direction: str
    provider: str
    status: str
    step_index: Optional[int] = None
    attempt: int = 1
    content: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RunDetail(BaseModel):
    id: int
    tenant_id: str
    lead_id: str
    sequence_id: int
    current_step_index: int
    next_fire_at: Optional[datetime] = None
    status: str
    halt_reason: Optional[str] = None
    version: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    messages: List[MessageLogItem] = []


class WebhookResponse(BaseModel):
    success: bool
    duplicate: bool = False
    message: Optional[str] = None


# ============================================
# DOMAIN EVENTS
# ============================================

class LeadActivityEvent(BaseModel):
    """{leadId, activityType} handed to the CRM/Activity collaborator."""
    model_config = ConfigDict(populate_by_name=True)

    activity_id: Optional[int] = Field(default=None, alias="activityId")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    lead_id: Optional[str] = Field(default=None, alias="leadId")
    activity_type: str = Field(..., alias="activityType")
    data: Dict[str, Any] = {}
