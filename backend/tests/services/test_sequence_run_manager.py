# backend/tests/services/test_sequence_run_manager.py
"""Run lifecycle: start, claim, pause, cancel, resume."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from lead_engine.modules.automation.constants import RunStatus
from lead_engine.modules.automation.services.sequence_run_manager import validate_step_orders
from lead_engine.shared.utils.exceptions import ClaimLostError, ConflictError, EntityNotFoundError

from conftest import LEAD, TENANT, build_run_manager


# ============================================
# START
# ============================================

def test_start_creates_active_run_at_step_zero(store, clock, seeded):
    manager = build_run_manager(store, clock)

    run = asyncio.run(manager.start(TENANT, LEAD, seeded, trigger_event="MANUAL"))

    assert run["status"] == RunStatus.ACTIVE.value
    assert run["current_step_index"] == 0
    assert run["next_fire_at"] == clock.now
    assert run["started_at"] == clock.now
    assert run["trigger_event"] == "MANUAL"


def test_second_active_run_for_same_lead_and_sequence_conflicts(store, clock, seeded):
    manager = build_run_manager(store, clock)
    asyncio.run(manager.start(TENANT, LEAD, seeded))

    with pytest.raises(ConflictError):
        asyncio.run(manager.start(TENANT, LEAD, seeded))

    assert len(store.runs) == 1


def test_new_run_allowed_once_previous_is_cancelled(store, clock, seeded):
    manager = build_run_manager(store, clock)
    first = asyncio.run(manager.start(TENANT, LEAD, seeded))
    asyncio.run(manager.cancel(first["id"], "restart"))

    second = asyncio.run(manager.start(TENANT, LEAD, seeded))

    assert second["id"] != first["id"]
    assert store.runs[first["id"]]["status"] == RunStatus.CANCELLED.value


def test_start_rejects_inactive_foreign_and_missing_sequences(store, clock):
    store.set_tenant()
    inactive = store.add_sequence([{"content": "Hi"}], is_active=False)
    foreign = store.add_sequence([{"content": "Hi"}], tenant_id="builder-2")
    manager = build_run_manager(store, clock)

    with pytest.raises(ValueError):
        asyncio.run(manager.start(TENANT, LEAD, inactive))
    with pytest.raises(EntityNotFoundError):
        asyncio.run(manager.start(TENANT, LEAD, foreign))
    with pytest.raises(EntityNotFoundError):
        asyncio.run(manager.start(TENANT, LEAD, 9999))


def test_step_orders_must_be_contiguous():
    validate_step_orders([{"step_order": 1}, {"step_order": 2}])

    with pytest.raises(ValueError):
        validate_step_orders([])
    with pytest.raises(ValueError):
        validate_step_orders([{"step_order": 1}, {"step_order": 3}])
    with pytest.raises(ValueError):
        validate_step_orders([{"step_order": 2}, {"step_order": 1}])


def test_gated_first_step_is_snapped_into_business_hours(store, clock):
    store.set_tenant()
    sequence_id = store.add_sequence([{"content": "Hi", "delay_hours": 2, "business_hours_only": True}])
    clock.now = datetime(2026, 1, 16, 17, 0, tzinfo=timezone.utc)  # Friday; +2h is 19:00
    manager = build_run_manager(store, clock)

    run = asyncio.run(manager.start(TENANT, LEAD, sequence_id))

    assert run["next_fire_at"] == datetime(2026, 1, 19, 9, 0, tzinfo=timezone.utc)


# ============================================
# CLAIM
# ============================================

def test_claim_bumps_version_and_leases(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))

    version = asyncio.run(manager.claim(run, "worker-1", 120))

    assert version == run["version"] + 1
    assert store.runs[run["id"]]["claimed_by"] == "worker-1"
    assert store.runs[run["id"]]["next_fire_at"] == clock.now + timedelta(seconds=120)


def test_stale_claim_raises_claim_lost(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))
    asyncio.run(manager.claim(run, "worker-1", 120))

    with pytest.raises(ClaimLostError):
        asyncio.run(manager.claim(run, "worker-2", 120))


def test_claim_holder_loses_run_after_pause(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))
    version = asyncio.run(manager.claim(run, "worker-1", 120))
    asyncio.run(manager.pause(run["id"], "operator"))

    with pytest.raises(ClaimLostError):
        asyncio.run(manager.reschedule(run["id"], version, clock.now))


# ============================================
# PAUSE / CANCEL / RESUME
# ============================================

def test_pause_keeps_next_fire_at_and_resume_honours_it(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))
    store.runs[run["id"]]["next_fire_at"] = clock.now + timedelta(hours=5)

    asyncio.run(manager.pause(run["id"], "operator"))
    paused = store.runs[run["id"]]
    assert paused["status"] == RunStatus.PAUSED.value
    assert paused["halt_reason"] == "operator"
    assert paused["next_fire_at"] == clock.now + timedelta(hours=5)

    resumed = asyncio.run(manager.resume(run["id"]))
    assert resumed["status"] == RunStatus.ACTIVE.value
    assert resumed["next_fire_at"] == clock.now + timedelta(hours=5)
    assert store.runs[run["id"]]["halt_reason"] is None


def test_resume_after_overdue_pause_fires_now(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))
    asyncio.run(manager.pause(run["id"], "operator"))
    clock.advance(hours=3)

    resumed = asyncio.run(manager.resume(run["id"]))

    assert resumed["next_fire_at"] == clock.now


def test_resume_of_gated_step_is_snapped(store, clock):
    store.set_tenant()
    sequence_id = store.add_sequence([{"content": "Hi", "business_hours_only": True}])
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, sequence_id))
    asyncio.run(manager.pause(run["id"], "operator"))
    clock.now = datetime(2026, 1, 17, 12, 0, tzinfo=timezone.utc)  # Saturday

    resumed = asyncio.run(manager.resume(run["id"]))

    assert resumed["next_fire_at"] == datetime(2026, 1, 19, 9, 0, tzinfo=timezone.utc)


def test_resume_conflicts_with_newer_active_run(store, clock, seeded):
    manager = build_run_manager(store, clock)
    old = asyncio.run(manager.start(TENANT, LEAD, seeded))
    asyncio.run(manager.pause(old["id"], "operator"))
    # Paused runs do not block a fresh start
    asyncio.run(manager.start(TENANT, LEAD, seeded))

    with pytest.raises(ConflictError):
        asyncio.run(manager.resume(old["id"]))

    assert store.runs[old["id"]]["status"] == RunStatus.PAUSED.value


def test_illegal_transitions_raise_conflict(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))

    with pytest.raises(ConflictError):
        asyncio.run(manager.resume(run["id"]))

    asyncio.run(manager.cancel(run["id"], "operator"))

    with pytest.raises(ConflictError):
        asyncio.run(manager.pause(run["id"], "operator"))
    with pytest.raises(ConflictError):
        asyncio.run(manager.cancel(run["id"], "again"))
    with pytest.raises(EntityNotFoundError):
        asyncio.run(manager.pause(424242, "operator"))


def test_cancel_clears_next_fire_at(store, clock, seeded):
    manager = build_run_manager(store, clock)
    run = asyncio.run(manager.start(TENANT, LEAD, seeded))

    asyncio.run(manager.cancel(run["id"], "operator"))

    cancelled = store.runs[run["id"]]
    assert cancelled["status"] == RunStatus.CANCELLED.value
    assert cancelled["next_fire_at"] is None
    assert cancelled["completed_at"] == clock.now


def test_lead_wide_pause_and_cancel(store, clock, seeded):
    second_sequence = store.add_sequence([{"content": "Hello {{name}}"}])
    manager = build_run_manager(store, clock)
    a = asyncio.run(manager.start(TENANT, LEAD, seeded))
    b = asyncio.run(manager.start(TENANT, LEAD, second_sequence))

    paused = asyncio.run(manager.pause_active_runs_for_lead(LEAD, "lead_replied"))
    cancelled = asyncio.run(manager.cancel_runs_for_lead(LEAD, "lead_deleted"))

    assert sorted(paused) == sorted([a["id"], b["id"]])
    assert sorted(cancelled) == sorted([a["id"], b["id"]])
    assert all(store.runs[i]["halt_reason"] == "lead_deleted" for i in (a["id"], b["id"]))
