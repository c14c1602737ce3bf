"""Timezone-aware clock helpers. Every stored instant is UTC."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. from SQLite in tests) as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
