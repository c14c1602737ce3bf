"""
Automation Models

Exports all ORM models for the automation module.
"""

from .message_template import MessageTemplate
from .sequence import AutomationSequence, AutomationStep
from .sequence_run import SequenceRun
from .message_log import MessageLog
from .webhook_event import WebhookEvent
from .automation_activity import AutomationActivity
from .crm import Lead, Project, User, TenantMessagingConfig

__all__ = [
    "MessageTemplate",
    "AutomationSequence",
    "AutomationStep",
    "SequenceRun",
    "MessageLog",
    "WebhookEvent",
    "AutomationActivity",
    "Lead",
    "Project",
    "User",
    "TenantMessagingConfig",
]
