# backend/tests/services/test_business_hours.py
"""Business hours window checks and forward snapping."""
import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest

from lead_engine.modules.automation.schemas.automation_schemas import BusinessHoursConfig
from lead_engine.modules.automation.services.business_hours import (
    is_within_business_hours,
    snap_to_business_hours,
)
from lead_engine.modules.automation.services.dispatcher import DispatchOutcome

from conftest import LEAD, TENANT, build_dispatcher, build_run_manager

UTC = timezone.utc
NINE_TO_SIX = BusinessHoursConfig(start_time=time(9, 0), end_time=time(18, 0), timezone="UTC")
KOLKATA = BusinessHoursConfig(start_time=time(10, 0), end_time=time(19, 0), timezone="Asia/Kolkata")


def test_inside_window_is_unchanged():
    wednesday_noon = datetime(2026, 1, 14, 12, 0, tzinfo=UTC)

    assert snap_to_business_hours(wednesday_noon, NINE_TO_SIX) == wednesday_noon
    assert is_within_business_hours(wednesday_noon, NINE_TO_SIX)


def test_before_start_snaps_to_same_day_start():
    early = datetime(2026, 1, 14, 6, 30, tzinfo=UTC)

    assert snap_to_business_hours(early, NINE_TO_SIX) == datetime(2026, 1, 14, 9, 0, tzinfo=UTC)


def test_friday_evening_snaps_to_monday_morning():
    friday_1730 = datetime(2026, 1, 16, 17, 30, tzinfo=UTC) + timedelta(hours=1)  # 18:30, after close

    assert snap_to_business_hours(friday_1730, NINE_TO_SIX) == datetime(2026, 1, 19, 9, 0, tzinfo=UTC)


def test_friday_1730_plus_day_delay_lands_on_monday_open():
    # Saturday 17:30 is not an active day -> Monday 09:00
    dispatched = datetime(2026, 1, 16, 17, 30, tzinfo=UTC)
    target = snap_to_business_hours(dispatched + timedelta(hours=24), NINE_TO_SIX)

    assert target.weekday() == 0
    assert target == datetime(2026, 1, 19, 9, 0, tzinfo=UTC)


def test_gated_day_later_step_through_start_dispatch_and_advance(store, clock):
    store.set_tenant()
    store.add_lead()
    sequence_id = store.add_sequence([
        {"content": "Hi {{name}}", "delay_hours": 0},
        {"content": "Hi {{first_name}}, following up", "delay_hours": 24, "business_hours_only": True},
    ])
    clock.now = datetime(2026, 1, 16, 17, 30, tzinfo=UTC)  # Friday
    run = asyncio.run(build_run_manager(store, clock).start(TENANT, LEAD, sequence_id))
    dispatcher = build_dispatcher(store, clock)

    first = asyncio.run(dispatcher.dispatch(dict(store.runs[run["id"]])))
    monday_open = datetime(2026, 1, 19, 9, 0, tzinfo=UTC)

    assert first == DispatchOutcome.SENT
    assert store.runs[run["id"]]["next_fire_at"] == monday_open

    clock.now = monday_open
    second = asyncio.run(dispatcher.dispatch(dict(store.runs[run["id"]])))

    logs = store.logs_for_run(run["id"])
    assert second == DispatchOutcome.COMPLETED
    assert [l["sent_at"] for l in logs] == [datetime(2026, 1, 16, 17, 30, tzinfo=UTC), monday_open]


def test_end_of_window_is_exclusive():
    at_close = datetime(2026, 1, 14, 18, 0, tzinfo=UTC)

    assert not is_within_business_hours(at_close, NINE_TO_SIX)
    assert snap_to_business_hours(at_close, NINE_TO_SIX) == datetime(2026, 1, 15, 9, 0, tzinfo=UTC)


def test_weekend_snaps_to_next_active_day():
    saturday = datetime(2026, 1, 17, 11, 0, tzinfo=UTC)

    assert snap_to_business_hours(saturday, NINE_TO_SIX) == datetime(2026, 1, 19, 9, 0, tzinfo=UTC)


def test_window_is_evaluated_in_tenant_timezone():
    # 03:00 UTC = 08:30 IST, before a 10:00 IST start -> 04:30 UTC
    instant = datetime(2026, 1, 14, 3, 0, tzinfo=UTC)
    snapped = snap_to_business_hours(instant, KOLKATA)

    assert snapped == datetime(2026, 1, 14, 4, 30, tzinfo=UTC)
    assert snapped.tzinfo == UTC


def test_custom_active_days():
    weekend_only = BusinessHoursConfig(
        start_time=time(9, 0), end_time=time(18, 0), timezone="UTC", active_days=["saturday", "sunday"]
    )
    monday = datetime(2026, 1, 19, 12, 0, tzinfo=UTC)

    assert snap_to_business_hours(monday, weekend_only) == datetime(2026, 1, 24, 9, 0, tzinfo=UTC)


@pytest.mark.parametrize("hour", [0, 6, 9, 13, 17, 18, 23])
@pytest.mark.parametrize("day", range(12, 19))
def test_snap_is_idempotent(day, hour):
    instant = datetime(2026, 1, day, hour, 15, tzinfo=UTC)
    once = snap_to_business_hours(instant, KOLKATA)

    assert snap_to_business_hours(once, KOLKATA) == once
    assert once >= instant
    assert is_within_business_hours(once, KOLKATA)


def test_naive_input_is_treated_as_utc():
    naive = datetime(2026, 1, 14, 7, 0)

    assert snap_to_business_hours(naive, NINE_TO_SIX) == datetime(2026, 1, 14, 9, 0, tzinfo=UTC)


def test_invalid_window_is_rejected():
    with pytest.raises(ValueError):
        BusinessHoursConfig(start_time=time(18, 0), end_time=time(9, 0))
    with pytest.raises(ValueError):
        BusinessHoursConfig(active_days=["FUNDAY"])
