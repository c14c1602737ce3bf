"""
Business Hours Snapping

Moves a target instant forward to the first instant inside the tenant's
send window. The window on an active day is [start_time, end_time) in the
tenant's timezone.

- inside the window on an active day: unchanged
- before start on an active day: that day's start
- at/after end, or on an inactive day: next active day's start

snap(snap(t)) == snap(t) for every t.
"""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from lead_engine.modules.automation.schemas.automation_schemas import BusinessHoursConfig


def is_within_business_hours(instant: datetime, config: BusinessHoursConfig) -> bool:
    local = _to_local(instant, config)
    return (
        local.weekday() in config.active_weekday_numbers
        and config.start_time <= local.time().replace(tzinfo=None) < config.end_time
    )


def snap_to_business_hours(instant: datetime, config: BusinessHoursConfig) -> datetime:
    """
    Snap an instant forward into business hours.

    Args:
        instant: Timezone-aware target (naive values are treated as UTC)
        config: Window, timezone and active weekdays

    Returns:
        A timezone-aware UTC instant >= instant, inside the window.
    """
    tz = ZoneInfo(config.timezone)
    local = _to_local(instant, config)
    active_days = config.active_weekday_numbers

    if local.weekday() in active_days:
        local_time = local.time().replace(tzinfo=None)
        if config.start_time <= local_time < config.end_time:
            return instant.astimezone(timezone.utc) if instant.tzinfo else instant.replace(tzinfo=timezone.utc)
        if local_time < config.start_time:
            return _local_start(local.date(), config, tz)

    # Next active day (at most 7 days ahead)
    day = local.date()
    for _ in range(7):
        day = day + timedelta(days=1)
        if day.weekday() in active_days:
            return _local_start(day, config, tz)

    raise ValueError("Business hours configuration has no active days")


def _to_local(instant: datetime, config: BusinessHoursConfig) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(ZoneInfo(config.timezone))


def _local_start(day, config: BusinessHoursConfig, tz: ZoneInfo) -> datetime:
    start = datetime.combine(day, config.start_time, tzinfo=tz)
    # Round-trip through UTC so nonexistent local times (DST gaps) resolve forward
    return start.astimezone(timezone.utc)
