"""
Domain Event Publisher

Lead activity events (REPLY, STAGE_AUTO_ADVANCE) are written to the
automation_activities outbox inside the caller's transaction, then fanned
out to in-process subscribers once the caller has committed.

Subscriber failures are logged and never reach the webhook path; the
outbox row stays unpublished for the collaborator to poll.
"""
import logging
from typing import Awaitable, Callable, List, Optional

from lead_engine.modules.automation.constants import ActivityType
from lead_engine.modules.automation.repositories.activity_repository import ActivityRepository
from lead_engine.modules.automation.schemas.automation_schemas import LeadActivityEvent
from lead_engine.shared.utils.time_utils import utcnow

logger = logging.getLogger("event_publisher")

Subscriber = Callable[[LeadActivityEvent], Awaitable[None]]


class EventPublisher:

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: Subscriber) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def record(
        self,
        activity_repo: ActivityRepository,
        activity_type: ActivityType,
        tenant_id: Optional[str],
        lead_id: Optional[str],
        data: Optional[dict] = None
    ) -> LeadActivityEvent:
        """Write the outbox row (no commit). Call publish() after the commit."""
        row = await activity_repo.create_activity(
            activity_type=activity_type.value,
            tenant_id=tenant_id,
            lead_id=lead_id,
            extra_data=data or {}
        )
        return LeadActivityEvent(
            activity_id=row.get("id"),
            tenant_id=tenant_id,
            lead_id=lead_id,
            activity_type=activity_type.value,
            data=data or {}
        )

    async def publish(self, events: List[LeadActivityEvent], activity_repo: Optional[ActivityRepository] = None) -> int:
        """
        Notify subscribers of committed events.

        Returns:
            Number of events every subscriber accepted. When activity_repo is
            given, those events are marked published (caller commits).
        """
        delivered: List[LeadActivityEvent] = []
        for event in events:
            ok = True
            for handler in list(self._subscribers):
                try:
                    await handler(event)
                except Exception as e:
                    ok = False
                    logger.error(f"Subscriber {getattr(handler, '__name__', handler)} failed for "
                                 f"{event.activity_type} lead={event.lead_id}: {e}")
            if ok:
                delivered.append(event)

        if activity_repo is not None:
            await activity_repo.mark_published(
                [e.activity_id for e in delivered if e.activity_id is not None],
                utcnow()
            )
        return len(delivered)


# Process-wide publisher
event_publisher = EventPublisher()
