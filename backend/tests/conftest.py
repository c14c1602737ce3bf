# backend/tests/conftest.py
"""
Shared fixtures for all test modules.

Services are exercised against in-memory fake repositories that honour the
same conditional-update contracts as the SQL ones (version/status checks on
runs, forward-only status moves on message logs). Async code is driven with
asyncio.run() inside plain test functions to avoid event loop fixtures.
"""
import itertools
from datetime import datetime, timedelta, timezone, time
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from lead_engine.main import app
from lead_engine.modules.automation.constants import (
    ALLOWED_PREDECESSORS,
    MessageDirection,
    MessageStatus,
    ProviderName,
    RunStatus,
    TriggerKind,
)
from lead_engine.modules.automation.schemas.automation_schemas import (
    BusinessHoursConfig,
    RateLimitConfig,
    TenantMessagingSettings,
)
from lead_engine.modules.automation.services.dispatcher import Dispatcher
from lead_engine.modules.automation.services.event_publisher import EventPublisher
from lead_engine.modules.automation.services.inbound_processor import InboundProcessor
from lead_engine.modules.automation.services.providers.factory import ProviderFactory
from lead_engine.modules.automation.services.rate_limiter import RateLimiter
from lead_engine.modules.automation.services.sequence_run_manager import SequenceRunManager
from lead_engine.modules.automation.services.trigger_listener import TriggerListener
from lead_engine.shared.utils.counter_store import InMemoryCounterStore
from lead_engine.shared.utils.exceptions import ClaimLostError

TENANT = "builder-1"
LEAD = "lead-1"


# ============================================
# CLOCK AND SESSION
# ============================================

class FakeClock:
    """Callable returning a controllable aware UTC datetime."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()


class _NullTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for AsyncSession; counts commits and rollbacks."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    def begin_nested(self):
        return _NullTransaction()

    async def close(self):
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


# ============================================
# IN-MEMORY STATE + REPOSITORIES
# ============================================

class FakeStore:
    """Rows shared by all fake repositories of one test."""

    def __init__(self):
        self.runs: Dict[int, dict] = {}
        self.logs: Dict[int, dict] = {}
        self.sequences: Dict[int, dict] = {}
        self.templates: Dict[int, dict] = {}
        self.leads: Dict[str, dict] = {}
        self.tenants: Dict[str, TenantMessagingSettings] = {}
        self.webhook_events: set = set()
        self.activities: Dict[int, dict] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    # ---- seed helpers ----

    def add_template(self, content: str, variables: Optional[List[str]] = None, tenant_id: str = TENANT) -> int:
        template_id = self.next_id()
        self.templates[template_id] = {
            "id": template_id, "tenant_id": tenant_id, "name": f"t{template_id}",
            "content": content, "variables": variables or [], "is_active": True,
        }
        return template_id

    def add_sequence(
        self,
        steps: List[dict],
        tenant_id: str = TENANT,
        trigger_event: str = TriggerKind.MANUAL.value,
        trigger_stage: Optional[str] = None,
        is_active: bool = True
    ) -> int:
        """steps: [{"content": ..., "delay_hours": ..., "business_hours_only": ...}, ...]"""
        sequence_id = self.next_id()
        built = []
        for order, step in enumerate(steps, start=1):
            template_id = step.get("template_id") or self.add_template(step.get("content", "Hi {{name}}"))
            built.append({
                "id": self.next_id(),
                "sequence_id": sequence_id,
                "template_id": template_id,
                "delay_hours": step.get("delay_hours", 0),
                "business_hours_only": step.get("business_hours_only", False),
                "step_order": step.get("step_order", order),
            })
        self.sequences[sequence_id] = {
            "id": sequence_id, "tenant_id": tenant_id, "name": f"seq{sequence_id}",
            "trigger_event": trigger_event, "trigger_stage": trigger_stage,
            "is_active": is_active, "steps": built,
        }
        return sequence_id

    def add_lead(self, lead_id: str = LEAD, phone: str = "+919876543210", name: str = "Rahul Sharma",
                 tenant_id: str = TENANT, stage: str = "NEW") -> dict:
        lead = {"id": lead_id, "builder_id": tenant_id, "name": name, "phone": phone,
                "email": None, "stage": stage, "project": "Skyline Towers", "agent": "Priya"}
        self.leads[lead_id] = lead
        return lead

    def set_tenant(self, tenant_id: str = TENANT, **overrides) -> TenantMessagingSettings:
        tenant = TenantMessagingSettings(
            tenant_id=tenant_id,
            provider=ProviderName.MOCK,
            sender_number=overrides.pop("sender_number", "918000000000"),
            rate_limits=overrides.pop("rate_limits", RateLimitConfig(per_second=0, per_minute=0, per_hour=0)),
            business_hours=overrides.pop("business_hours", BusinessHoursConfig(
                start_time=time(9, 0), end_time=time(18, 0), timezone="UTC"
            )),
        )
        self.tenants[tenant_id] = tenant
        return tenant

    def logs_for_run(self, run_id: int) -> List[dict]:
        return [dict(log) for log in sorted(self.logs.values(), key=lambda l: l["id"]) if log["run_id"] == run_id]


class FakeSequenceRunRepository:

    def __init__(self, store: FakeStore):
        self.store = store

    async def get_by_id(self, run_id):
        run = self.store.runs.get(run_id)
        return dict(run) if run else None

    async def find_active_run(self, lead_id, sequence_id):
        for run in self.store.runs.values():
            if run["lead_id"] == lead_id and run["sequence_id"] == sequence_id and run["status"] == RunStatus.ACTIVE.value:
                return dict(run)
        return None

    async def find_runs_for_lead(self, lead_id, statuses):
        wanted = {s.value for s in statuses}
        return [dict(r) for r in self.store.runs.values() if r["lead_id"] == lead_id and r["status"] in wanted]

    async def find_due_runs(self, now, limit):
        due = [
            r for r in self.store.runs.values()
            if r["status"] == RunStatus.ACTIVE.value and r["next_fire_at"] is not None and r["next_fire_at"] <= now
        ]
        due.sort(key=lambda r: (r["next_fire_at"], r["id"]))
        return [dict(r) for r in due[:limit]]

    async def create_run(self, tenant_id, lead_id, sequence_id, next_fire_at, trigger_event=None, started_at=None):
        run_id = self.store.next_id()
        self.store.runs[run_id] = {
            "id": run_id, "tenant_id": tenant_id, "lead_id": lead_id, "sequence_id": sequence_id,
            "trigger_event": trigger_event, "current_step_index": 0, "next_fire_at": next_fire_at,
            "status": RunStatus.ACTIVE.value, "halt_reason": None, "version": 0,
            "claimed_by": None, "claimed_at": None, "last_dispatched_at": None,
            "started_at": started_at, "completed_at": None,
        }
        return dict(self.store.runs[run_id])

    async def claim(self, run_id, expected_version, worker_id, now, lease_until):
        run = self.store.runs.get(run_id)
        if (not run or run["version"] != expected_version or run["status"] != RunStatus.ACTIVE.value
                or run["next_fire_at"] is None or run["next_fire_at"] > now):
            raise ClaimLostError(run_id)
        run.update(version=expected_version + 1, claimed_by=worker_id, claimed_at=now, next_fire_at=lease_until)
        return expected_version + 1

    async def update_claimed(self, run_id, expected_version, **values):
        run = self.store.runs.get(run_id)
        if not run or run["version"] != expected_version or run["status"] != RunStatus.ACTIVE.value:
            raise ClaimLostError(run_id)
        run.update(values)
        run["version"] = expected_version + 1
        return expected_version + 1

    async def move_past_sent_step(self, run_id, step_index, **values):
        run = self.store.runs.get(run_id)
        if (not run or run["current_step_index"] != step_index
                or run["status"] not in (RunStatus.ACTIVE.value, RunStatus.PAUSED.value)):
            return False
        run.update(values)
        run["version"] += 1
        return True

    async def change_status(self, run_id, from_statuses, to_status, **values):
        run = self.store.runs.get(run_id)
        if not run or run["status"] not in {s.value for s in from_statuses}:
            return False
        run.update(values)
        run["status"] = to_status.value
        run["version"] += 1
        return True


class FakeMessageLogRepository:

    _TIMESTAMPS = {
        MessageStatus.SENT: "sent_at",
        MessageStatus.DELIVERED: "delivered_at",
        MessageStatus.READ: "read_at",
        MessageStatus.REPLIED: "replied_at",
        MessageStatus.FAILED: "failed_at",
    }

    def __init__(self, store: FakeStore):
        self.store = store

    def _new(self, **values) -> dict:
        log_id = self.store.next_id()
        row = {
            "id": log_id, "tenant_id": None, "lead_id": None, "run_id": None, "sequence_id": None,
            "step_index": None, "template_id": None, "attempt": 1, "direction": None, "provider": None,
            "status": None, "content": None, "from_number": None, "to_number": None,
            "provider_message_id": None, "error_kind": None, "error_message": None,
            "sent_at": None, "delivered_at": None, "read_at": None, "replied_at": None,
            "failed_at": None, "created_at": None,
        }
        row.update(values)
        self.store.logs[log_id] = row
        return dict(row)

    async def get_by_provider_message_id(self, provider, provider_message_id):
        matches = [
            r for r in self.store.logs.values()
            if r["provider"] == provider and r["provider_message_id"] == provider_message_id
            and r["direction"] == MessageDirection.OUTBOUND.value
        ]
        return dict(max(matches, key=lambda r: r["id"])) if matches else None

    async def find_open_attempt(self, run_id, step_index):
        matches = [
            r for r in self.store.logs.values()
            if r["run_id"] == run_id and r["step_index"] == step_index
            and r["status"] in (MessageStatus.PENDING.value, MessageStatus.QUEUED.value)
        ]
        return dict(max(matches, key=lambda r: r["id"])) if matches else None

    async def get_max_attempt(self, run_id, step_index):
        attempts = [r["attempt"] for r in self.store.logs.values() if r["run_id"] == run_id and r["step_index"] == step_index]
        return max(attempts) if attempts else 0

    async def find_latest_sent_outbound(self, lead_id):
        matches = [
            r for r in self.store.logs.values()
            if r["lead_id"] == lead_id and r["direction"] == MessageDirection.OUTBOUND.value and r["sent_at"] is not None
        ]
        return dict(max(matches, key=lambda r: (r["sent_at"], r["id"]))) if matches else None

    async def list_for_run(self, run_id):
        return self.store.logs_for_run(run_id)

    async def create_outbound_attempt(self, tenant_id, lead_id, run_id, sequence_id, step_index,
                                      template_id, provider, attempt, to_number=None):
        return self._new(
            tenant_id=tenant_id, lead_id=lead_id, run_id=run_id, sequence_id=sequence_id,
            step_index=step_index, template_id=template_id, attempt=attempt,
            direction=MessageDirection.OUTBOUND.value, provider=provider,
            status=MessageStatus.PENDING.value, to_number=to_number
        )

    async def create_inbound(self, tenant_id, lead_id, provider, body, from_number, to_number,
                             provider_message_id, received_at):
        return self._new(
            tenant_id=tenant_id, lead_id=lead_id, direction=MessageDirection.INBOUND.value,
            provider=provider, status=MessageStatus.RECEIVED.value, content=body,
            from_number=from_number, to_number=to_number,
            provider_message_id=provider_message_id, created_at=received_at
        )

    async def transition(self, log_id, target, at=None, **values):
        row = self.store.logs.get(log_id)
        allowed = ALLOWED_PREDECESSORS.get(target)
        if not row or not allowed or row["status"] not in {s.value for s in allowed}:
            return False
        column = self._TIMESTAMPS.get(target)
        if column and at is not None:
            values[column] = at
        row.update(values)
        row["status"] = target.value
        return True

    async def set_content(self, log_id, content):
        self.store.logs[log_id]["content"] = content


class FakeSequenceRepository:

    def __init__(self, store: FakeStore):
        self.store = store

    async def get_sequence_with_steps(self, sequence_id):
        sequence = self.store.sequences.get(sequence_id)
        if not sequence:
            return None
        return {**sequence, "steps": [dict(s) for s in sequence["steps"]]}

    async def get_active_sequence_ids_for_trigger(self, tenant_id, trigger_event, stage=None):
        return [
            s["id"] for s in sorted(self.store.sequences.values(), key=lambda s: s["id"])
            if s["tenant_id"] == tenant_id and s["trigger_event"] == trigger_event.value and s["is_active"]
            and (trigger_event != TriggerKind.STAGE_CHANGED or s["trigger_stage"] == stage)
        ]

    async def get_template(self, template_id):
        template = self.store.templates.get(template_id)
        return dict(template) if template else None


class FakeLeadRepository:

    def __init__(self, store: FakeStore):
        self.store = store

    async def find_by_phone(self, normalized_phone, tenant_id=None):
        for lead in self.store.leads.values():
            if lead["phone"].lstrip("+") == normalized_phone and (not tenant_id or lead["builder_id"] == tenant_id):
                return dict(lead)
        return None

    async def get_template_bindings(self, lead_id):
        lead = self.store.leads.get(lead_id)
        if not lead:
            return None
        bindings = {
            "name": lead["name"],
            "first_name": lead["name"].split(" ")[0],
            "phone": lead["phone"],
            "email": lead["email"],
            "stage": lead["stage"],
            "project": lead["project"],
            "agent": lead["agent"],
        }
        return {k: str(v) for k, v in bindings.items() if v}


class FakeTenantConfigRepository:

    def __init__(self, store: FakeStore):
        self.store = store

    async def get_settings(self, tenant_id):
        tenant = self.store.tenants.get(tenant_id) or self.store.set_tenant(tenant_id)
        return tenant.model_copy(deep=True)

    async def find_tenant_by_sender(self, normalized_number):
        for tenant in self.store.tenants.values():
            if tenant.sender_number.lstrip("+") == normalized_number:
                return tenant.tenant_id
        return None


class FakeWebhookEventRepository:

    def __init__(self, store: FakeStore):
        self.store = store

    async def record_if_new(self, provider, event_id, kind, payload=None):
        key = (provider, event_id)
        if key in self.store.webhook_events:
            return False
        self.store.webhook_events.add(key)
        return True


class FakeActivityRepository:

    def __init__(self, store: FakeStore):
        self.store = store

    async def create_activity(self, activity_type, tenant_id=None, lead_id=None, extra_data=None):
        activity_id = self.store.next_id()
        row = {"id": activity_id, "activity_type": activity_type, "tenant_id": tenant_id,
               "lead_id": lead_id, "extra_data": extra_data or {}, "published_at": None}
        self.store.activities[activity_id] = row
        return dict(row)

    async def mark_published(self, activity_ids, published_at):
        for activity_id in activity_ids:
            self.store.activities[activity_id]["published_at"] = published_at


# ============================================
# SERVICE BUILDERS
# ============================================

def wire_run_manager(manager: SequenceRunManager, store: FakeStore) -> SequenceRunManager:
    manager.run_repo = FakeSequenceRunRepository(store)
    manager.sequence_repo = FakeSequenceRepository(store)
    manager.tenant_repo = FakeTenantConfigRepository(store)
    return manager


def build_run_manager(store: FakeStore, clock: FakeClock) -> SequenceRunManager:
    return wire_run_manager(SequenceRunManager(FakeSession(), clock=clock), store)


def build_dispatcher(store, clock, providers=None, rate_limiter=None, worker_id="worker-1",
                     status_echo_handler=None, max_attempts=3) -> Dispatcher:
    dispatcher = Dispatcher(
        db=FakeSession(),
        rate_limiter=rate_limiter or RateLimiter(InMemoryCounterStore(clock=clock.monotonic)),
        providers=providers or ProviderFactory(mock_echo_status=False),
        worker_id=worker_id,
        clock=clock,
        status_echo_handler=status_echo_handler,
        max_attempts=max_attempts,
        claim_lease_seconds=120
    )
    wire_run_manager(dispatcher.run_manager, store)
    dispatcher.log_repo = FakeMessageLogRepository(store)
    dispatcher.lead_repo = FakeLeadRepository(store)
    return dispatcher


def build_inbound_processor(store, clock, providers=None, publisher=None,
                            pause_on_reply=True, auto_advance_stage="") -> InboundProcessor:
    processor = InboundProcessor(
        FakeSession(),
        publisher=publisher or EventPublisher(),
        providers=providers or ProviderFactory(mock_echo_status=False),
        clock=clock,
        pause_on_reply=pause_on_reply,
        auto_advance_stage=auto_advance_stage
    )
    processor.webhook_repo = FakeWebhookEventRepository(store)
    processor.log_repo = FakeMessageLogRepository(store)
    processor.lead_repo = FakeLeadRepository(store)
    processor.tenant_repo = FakeTenantConfigRepository(store)
    processor.activity_repo = FakeActivityRepository(store)
    wire_run_manager(processor.run_manager, store)
    return processor


def build_trigger_listener(store, clock, wake_scheduler=None) -> TriggerListener:
    listener = TriggerListener(FakeSession(), wake_scheduler=wake_scheduler)
    listener.run_manager.clock = clock
    wire_run_manager(listener.run_manager, store)
    return listener


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clock():
    # Wednesday 2026-01-14 10:00 UTC (inside 09:00-18:00 Mon-Fri)
    return FakeClock(datetime(2026, 1, 14, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def seeded(store):
    """Tenant + lead + a two-step sequence (immediate, then 24h later)."""
    store.set_tenant()
    store.add_lead()
    sequence_id = store.add_sequence([
        {"content": "Hi {{name}}, thanks for your interest in {{project}}.", "delay_hours": 0},
        {"content": "Hi {{first_name}}, {{agent}} here. Shall we schedule a visit?", "delay_hours": 24},
    ])
    return sequence_id


@pytest.fixture(scope="module")
def test_client():
    """Create a FastAPI test client (lifespan not started: no scheduler, no database)."""
    return TestClient(app)
