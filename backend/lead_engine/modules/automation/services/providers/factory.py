"""
Provider Factory

Resolves a tenant's adapter once per tenant settings (strategy pattern).
Adapters are cached by (provider, credentials) so the mock keeps its state
and HTTP adapters share the pooled client.
"""
import logging
from typing import Dict, Tuple

from lead_engine.modules.automation.constants import ProviderName
from lead_engine.modules.automation.repositories.tenant_config_repository import default_tenant_settings
from lead_engine.modules.automation.schemas.automation_schemas import TenantMessagingSettings
from lead_engine.modules.automation.services.providers.base import WhatsAppProvider
from lead_engine.modules.automation.services.providers.mock_provider import MockProvider
from lead_engine.modules.automation.services.providers.twilio_provider import TwilioProvider
from lead_engine.modules.automation.services.providers.ultramsg_provider import UltraMsgProvider
from lead_engine.shared.core.config import settings

logger = logging.getLogger("provider_factory")


class ProviderFactory:

    def __init__(self, mock_echo_status: bool = None):
        self.mock_echo_status = settings.MOCK_PROVIDER_ECHO_STATUS if mock_echo_status is None else mock_echo_status
        self._cache: Dict[Tuple[str, str, str, str], WhatsAppProvider] = {}

    def for_tenant(self, tenant: TenantMessagingSettings) -> WhatsAppProvider:
        key = (tenant.provider.value, tenant.account_id, tenant.api_key, tenant.sender_number)
        provider = self._cache.get(key)
        if provider is None:
            provider = self._build(tenant)
            self._cache[key] = provider
        return provider

    def by_name(self, provider_name: ProviderName) -> WhatsAppProvider:
        """
        Adapter used only for parsing webhooks (no tenant known yet).
        Uses application-level credentials.
        """
        defaults = default_tenant_settings(tenant_id="_webhook")
        if defaults.provider != provider_name:
            defaults.provider = provider_name
            defaults.sender_number, defaults.account_id, defaults.api_key = "", "", ""
        return self.for_tenant(defaults)

    def _build(self, tenant: TenantMessagingSettings) -> WhatsAppProvider:
        logger.info(f"Building {tenant.provider.value} provider for tenant {tenant.tenant_id}")
        if tenant.provider == ProviderName.TWILIO:
            return TwilioProvider(
                account_sid=tenant.account_id,
                auth_token=tenant.api_key,
                sender_number=tenant.sender_number
            )
        if tenant.provider == ProviderName.ULTRAMSG:
            return UltraMsgProvider(
                instance_id=tenant.account_id,
                token=tenant.api_key,
                sender_number=tenant.sender_number
            )
        return MockProvider(sender_number=tenant.sender_number, echo_status=self.mock_echo_status)


# Process-wide factory
provider_factory = ProviderFactory()
