"""
Digest schedule: when does the next batch for a frequency go out.

Slots are wall-clock times in the operational time zone. The result is
always strictly after ``now`` and is returned as naive UTC for storage.
"""
from datetime import datetime, time, timedelta, tzinfo

from app.core.config import settings
from app.core.timeutils import to_local, to_utc_naive
from app.db.models.subscription import AlertFrequency

MORNING_SLOT = time(6, 0)
AFTERNOON_SLOT = time(16, 0)
WEEKLY_SLOT = time(8, 0)
WEEKLY_DAY = 6  # datetime.weekday(): Sunday


def _at(day, slot: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, slot, tzinfo=tz)


def next_dispatch_time(
    frequency: AlertFrequency,
    now: datetime,
    tz: tzinfo | None = None,
) -> datetime:
    """Next digest slot strictly after ``now`` (naive UTC in, naive UTC out).

    Raises:
        ValueError: for IMMEDIATE, which is never batched.
    """
    tz = tz or settings.operational_tz
    local_now = to_local(now, tz)
    today = local_now.date()

    if frequency == AlertFrequency.MORNING_ONLY:
        candidate = _at(today, MORNING_SLOT, tz)
        if candidate <= local_now:
            candidate = _at(today + timedelta(days=1), MORNING_SLOT, tz)
        return to_utc_naive(candidate)

    if frequency == AlertFrequency.TWICE_DAILY:
        for slot in (MORNING_SLOT, AFTERNOON_SLOT):
            candidate = _at(today, slot, tz)
            if candidate > local_now:
                return to_utc_naive(candidate)
        return to_utc_naive(_at(today + timedelta(days=1), MORNING_SLOT, tz))

    if frequency == AlertFrequency.WEEKLY_DIGEST:
        days_ahead = (WEEKLY_DAY - local_now.weekday()) % 7
        candidate = _at(today + timedelta(days=days_ahead), WEEKLY_SLOT, tz)
        if candidate <= local_now:
            candidate = _at(today + timedelta(days=days_ahead + 7), WEEKLY_SLOT, tz)
        return to_utc_naive(candidate)

    raise ValueError(f"Frequency {frequency!r} is not batched")
