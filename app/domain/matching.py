"""
Subscription matching rules.

A subscription matches an event when every filter passes: effectively
active, same event kind, type filter, source not blocked, within radius,
outside quiet hours and on an active day. Local-time filters use the
operational time zone.
"""
from dataclasses import dataclass
from datetime import datetime, time, tzinfo

from app.core.config import settings
from app.core.geo import haversine_km
from app.core.timeutils import to_local, weekday_sunday_first
from app.core.validation import ClockTimeValidator
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import Subscription


@dataclass(frozen=True)
class SubscriptionMatch:
    subscription: Subscription
    distance_km: float


def in_quiet_hours(start: str | None, end: str | None, local_time: time) -> bool:
    """Inclusive window check. A start after end wraps past midnight (22:00-07:00)."""
    start_t = ClockTimeValidator.parse(start)
    end_t = ClockTimeValidator.parse(end)
    if start_t is None or end_t is None or start_t == end_t:
        return False
    if start_t < end_t:
        return start_t <= local_time <= end_t
    return local_time >= start_t or local_time <= end_t


def is_active_day(active_days: list[int] | None, local_now: datetime) -> bool:
    if not active_days:
        return True
    return weekday_sunday_first(local_now) in {int(day) for day in active_days}


def match_distance(
    subscription: Subscription,
    event: MarketEvent,
    now: datetime,
    tz: tzinfo | None = None,
) -> float | None:
    """Distance in km if the subscription matches the event, otherwise None."""
    if not subscription.is_effectively_active(now):
        return None
    if subscription.event_kind != event.kind:
        return None
    # sellers are not alerted about their own posts
    if subscription.user_id == event.source_id:
        return None
    if not subscription.all_types and event.type_id not in (subscription.type_ids or []):
        return None
    if event.source_id in (subscription.blocked_source_ids or []):
        return None

    distance = haversine_km(
        subscription.latitude, subscription.longitude, event.latitude, event.longitude
    )
    if distance > subscription.radius_km:
        return None

    local_now = to_local(now, tz or settings.operational_tz)
    if in_quiet_hours(subscription.quiet_hours_start, subscription.quiet_hours_end, local_now.time()):
        return None
    if not is_active_day(subscription.active_days, local_now):
        return None

    return distance


def rank_matches(
    subscriptions: list[Subscription],
    event: MarketEvent,
    now: datetime,
    tz: tzinfo | None = None,
) -> list[SubscriptionMatch]:
    """Matching subscriptions ordered nearest first."""
    matches = []
    for subscription in subscriptions:
        distance = match_distance(subscription, event, now, tz)
        if distance is not None:
            matches.append(SubscriptionMatch(subscription=subscription, distance_km=round(distance, 3)))
    matches.sort(key=lambda match: (match.distance_km, match.subscription.id or 0))
    return matches
