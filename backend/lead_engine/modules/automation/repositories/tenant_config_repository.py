"""
Tenant Config Repository
Resolves per-tenant messaging settings: the tenant's row (if any) merged over
application defaults from settings.
"""
from datetime import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.constants import ProviderName
from lead_engine.modules.automation.models.crm import TenantMessagingConfig
from lead_engine.modules.automation.schemas.automation_schemas import (
    BusinessHoursConfig,
    RateLimitConfig,
    TenantMessagingSettings,
)
from lead_engine.shared.core.config import settings


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def default_tenant_settings(tenant_id: str) -> TenantMessagingSettings:
    """Application-wide defaults (used when a tenant has no config row)."""
    provider = ProviderName(settings.WHATSAPP_PROVIDER.upper())
    if provider == ProviderName.TWILIO:
        sender, account, key = settings.TWILIO_PHONE_NUMBER, settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN
    elif provider == ProviderName.ULTRAMSG:
        sender, account, key = settings.ULTRAMSG_PHONE_NUMBER, settings.ULTRAMSG_INSTANCE, settings.ULTRAMSG_TOKEN
    else:
        sender, account, key = "", "", ""

    return TenantMessagingSettings(
        tenant_id=tenant_id,
        provider=provider,
        sender_number=sender,
        account_id=account,
        api_key=key,
        rate_limits=RateLimitConfig(
            per_second=settings.WHATSAPP_RATE_LIMIT_PER_SECOND,
            per_minute=settings.WHATSAPP_RATE_LIMIT_PER_MINUTE,
            per_hour=settings.WHATSAPP_RATE_LIMIT_PER_HOUR
        ),
        business_hours=BusinessHoursConfig(
            start_time=_parse_hhmm(settings.BUSINESS_HOURS_START),
            end_time=_parse_hhmm(settings.BUSINESS_HOURS_END),
            timezone=settings.BUSINESS_HOURS_TIMEZONE,
            active_days=settings.business_days_list
        )
    )


def merge_tenant_row(row: Optional[TenantMessagingConfig], tenant_id: str) -> TenantMessagingSettings:
    resolved = default_tenant_settings(tenant_id)
    if row is None or not row.is_active:
        return resolved

    if row.provider:
        provider = ProviderName(row.provider.upper())
        if provider != resolved.provider:
            # Credentials from defaults belong to another provider
            resolved.sender_number, resolved.account_id, resolved.api_key = "", "", ""
        resolved.provider = provider
    if row.phone_number:
        resolved.sender_number = row.phone_number
    if row.account_sid:
        resolved.account_id = row.account_sid
    if row.api_key:
        resolved.api_key = row.api_key

    limits = resolved.rate_limits
    resolved.rate_limits = RateLimitConfig(
        per_second=row.rate_per_second if row.rate_per_second is not None else limits.per_second,
        per_minute=row.rate_per_minute if row.rate_per_minute is not None else limits.per_minute,
        per_hour=row.rate_per_hour if row.rate_per_hour is not None else limits.per_hour
    )

    hours = resolved.business_hours
    resolved.business_hours = BusinessHoursConfig(
        start_time=_parse_hhmm(row.business_hours_start) if row.business_hours_start else hours.start_time,
        end_time=_parse_hhmm(row.business_hours_end) if row.business_hours_end else hours.end_time,
        timezone=row.business_hours_timezone or hours.timezone,
        active_days=row.business_days or hours.active_days
    )
    return resolved


class TenantConfigRepository:

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get_settings(self, tenant_id: str) -> TenantMessagingSettings:
        result = await self.db.execute(
            select(TenantMessagingConfig).where(TenantMessagingConfig.builder_id == tenant_id)
        )
        return merge_tenant_row(result.scalar_one_or_none(), tenant_id)

    async def find_tenant_by_sender(self, normalized_number: str) -> Optional[str]:
        """Tenant whose WhatsApp sender number received an inbound message."""
        result = await self.db.execute(
            select(TenantMessagingConfig.builder_id).where(
                TenantMessagingConfig.phone_number.in_([normalized_number, f"+{normalized_number}"]),
                TenantMessagingConfig.is_active == True
            )
        )
        return result.scalars().first()
