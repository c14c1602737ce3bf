"""
Automation Constants
Centralized enums for sequences, runs, and the message log.

Enums inherit from str so they can be stored in Text columns and returned
in JSON without .value conversion.
"""
from enum import Enum
from typing import Dict, FrozenSet

from lead_engine.shared.utils.exceptions import InvalidTransitionError


class MessageStatus(str, Enum):
    """
    Message Log status.

    Status Flow (outbound):
    PENDING → QUEUED → SENT → DELIVERED → READ
        ↘        ↘        ↘                  ↘
         FAILED   FAILED   FAILED     (reply) → REPLIED

    SENT, DELIVERED and READ may all jump straight to REPLIED, since
    delivery receipts can be lost. FAILED after SENT is a delivery failure
    reported by the provider. Inbound entries are RECEIVED and never move.
    """
    PENDING = "PENDING"      # Attempt created, not yet claimed
    QUEUED = "QUEUED"        # Claimed by a worker, rate-limit token pending
    SENT = "SENT"            # Provider accepted the send (has provider_message_id)
    DELIVERED = "DELIVERED"  # Delivered to recipient's device
    READ = "READ"            # Read by recipient
    FAILED = "FAILED"        # Terminal for this attempt
    REPLIED = "REPLIED"      # Lead replied after this message
    RECEIVED = "RECEIVED"    # Inbound message from the lead

    @classmethod
    def is_open_thread_status(cls, status: str) -> bool:
        """Outbound entries that an inbound reply can mark REPLIED."""
        return status in (cls.SENT, cls.DELIVERED, cls.READ)


# Allowed predecessors for each target status (forward-only moves)
ALLOWED_PREDECESSORS: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.QUEUED: frozenset({MessageStatus.PENDING}),
    MessageStatus.SENT: frozenset({MessageStatus.QUEUED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.SENT}),
    MessageStatus.READ: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED}),
    MessageStatus.REPLIED: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ}),
    MessageStatus.FAILED: frozenset({MessageStatus.PENDING, MessageStatus.QUEUED, MessageStatus.SENT}),
}


def can_transition(current: str, target: str) -> bool:
    """True if current -> target moves forward through the state machine."""
    try:
        current_status = MessageStatus(current)
        target_status = MessageStatus(target)
    except ValueError:
        return False
    return current_status in ALLOWED_PREDECESSORS.get(target_status, frozenset())


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is a forward move."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


class MessageDirection(str, Enum):
    OUTBOUND = "OUTBOUND"  # We sent it
    INBOUND = "INBOUND"    # Lead sent it


class RunStatus(str, Enum):
    """
    Sequence Run lifecycle.

    ACTIVE → COMPLETED | FAILED | CANCELLED
    ACTIVE ⇄ PAUSED (resume)
    PAUSED → CANCELLED
    """
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class TriggerKind(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    STAGE_CHANGED = "STAGE_CHANGED"
    MANUAL = "MANUAL"


class ProviderName(str, Enum):
    TWILIO = "TWILIO"
    ULTRAMSG = "ULTRAMSG"
    MOCK = "MOCK"


class ActivityType(str, Enum):
    """Domain events published to the CRM/Activity collaborator."""
    REPLY = "REPLY"
    STAGE_AUTO_ADVANCE = "STAGE_AUTO_ADVANCE"


class ErrorKind(str, Enum):
    """Classification stored on FAILED Message Log entries."""
    RENDER = "RENDER"
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    DELIVERY = "DELIVERY"  # Provider reported failure after SENT


class WebhookKind(str, Enum):
    INBOUND = "INBOUND"
    STATUS = "STATUS"


# Halt reasons written on runs
HALT_REASON_LEAD_REPLIED = "lead_replied"
HALT_REASON_LEAD_DELETED = "lead_deleted"
HALT_REASON_LEAD_REASSIGNED = "lead_reassigned"
HALT_REASON_SEQUENCE_MISSING = "sequence_missing"
