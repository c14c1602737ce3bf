"""
Automation Repositories

Database access layer for the automation module.
"""

from .sequence_repository import SequenceRepository
from .sequence_run_repository import SequenceRunRepository
from .message_log_repository import MessageLogRepository
from .webhook_event_repository import WebhookEventRepository
from .activity_repository import ActivityRepository
from .lead_repository import LeadRepository
from .tenant_config_repository import TenantConfigRepository

__all__ = [
    "SequenceRepository",
    "SequenceRunRepository",
    "MessageLogRepository",
    "WebhookEventRepository",
    "ActivityRepository",
    "LeadRepository",
    "TenantConfigRepository",
]
