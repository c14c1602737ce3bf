from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Lead Engine Automation"
    API_V1_STR: str = "/api/v1"
    CORS_ORIGIN: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Database (asyncpg URL). Engine is created lazily on first use.
    DATABASE_URL: str = ""

    # Shared counter store for rate limiting. Empty = in-process store (dev only)
    REDIS_URL: str = ""

    # WhatsApp provider selection: TWILIO | ULTRAMSG | MOCK
    WHATSAPP_PROVIDER: str = "MOCK"
    WHATSAPP_PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Twilio
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TWILIO_API_BASE: str = "https://api.twilio.com/2010-04-01"

    # UltraMsg
    ULTRAMSG_TOKEN: str = ""
    ULTRAMSG_INSTANCE: str = ""
    ULTRAMSG_PHONE_NUMBER: str = ""
    ULTRAMSG_API_BASE: str = "https://api.ultramsg.com"

    # Mock provider echoes a synthetic DELIVERED status after each send
    MOCK_PROVIDER_ECHO_STATUS: bool = True

    # Rate limit defaults (per tenant + provider)
    WHATSAPP_RATE_LIMIT_PER_SECOND: int = 1
    WHATSAPP_RATE_LIMIT_PER_MINUTE: int = 30
    WHATSAPP_RATE_LIMIT_PER_HOUR: int = 1000

    # Business hours defaults
    BUSINESS_HOURS_START: str = "09:00"
    BUSINESS_HOURS_END: str = "18:00"
    BUSINESS_HOURS_TIMEZONE: str = "UTC"
    BUSINESS_DAYS: str = "MONDAY,TUESDAY,WEDNESDAY,THURSDAY,FRIDAY"

    # Scheduler loop
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: float = 10.0
    SCHEDULER_BATCH_SIZE: int = 50
    SCHEDULER_CLAIM_LEASE_SECONDS: int = 120
    SCHEDULER_CONCURRENCY: int = 10  # Runs dispatched in parallel per tick

    # Dispatch retry policy
    DISPATCH_MAX_ATTEMPTS: int = 3
    DISPATCH_BACKOFF_BASE_SECONDS: int = 30
    DISPATCH_BACKOFF_MULTIPLIER: int = 2
    DISPATCH_BACKOFF_MAX_SECONDS: int = 3600

    # Inbound webhooks
    WEBHOOK_SECRET: str = ""  # Optional: set to require X-Webhook-Secret on callbacks
    DEFAULT_PHONE_REGION: str = "IN"
    PAUSE_RUNS_ON_REPLY: bool = True
    REPLY_AUTO_ADVANCE_STAGE: str = ""  # e.g. "CONTACTED"; empty disables the event

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def business_days_list(self) -> List[str]:
        return [d.strip().upper() for d in self.BUSINESS_DAYS.split(",") if d.strip()]


settings = Settings()
