"""
Time helpers.

Timestamps are stored as naive UTC. Local-time rules (digest times, quiet
hours, active days) are evaluated in settings.OPERATIONAL_TIMEZONE.
"""
from datetime import datetime, timezone, tzinfo

from app.core.config import settings


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz: tzinfo | None = None) -> datetime:
    """Naive-UTC (or aware) datetime -> aware datetime in the operational zone."""
    tz = tz or settings.operational_tz
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def to_utc_naive(value: datetime) -> datetime:
    """Aware datetime -> naive UTC for storage."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def weekday_sunday_first(value: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (value.weekday() + 1) % 7
