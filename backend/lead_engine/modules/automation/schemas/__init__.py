from .automation_schemas import (
    RateLimitConfig,
    BusinessHoursConfig,
    TenantMessagingSettings,
    TriggerEvent,
    LeadLifecycleEvent,
    InboundMessage,
    StatusUpdate,
    InboundWebhookPayload,
    StatusWebhookPayload,
    AcquireResult,
    RunActionRequest,
    TriggerResponse,
    MessageLogItem,
    RunDetail,
    WebhookResponse,
    LeadActivityEvent,
)
