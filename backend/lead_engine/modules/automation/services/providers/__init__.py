from .base import WhatsAppProvider
from .mock_provider import MockProvider
from .twilio_provider import TwilioProvider
from .ultramsg_provider import UltraMsgProvider
from .factory import ProviderFactory, provider_factory

__all__ = [
    "WhatsAppProvider",
    "MockProvider",
    "TwilioProvider",
    "UltraMsgProvider",
    "ProviderFactory",
    "provider_factory",
]
