"""
Subscription Service - create, edit, pause and match alert subscriptions
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidLocationError,
    InvalidRadiusError,
    SubscriptionNotFoundError,
    ValidationException,
    ErrorCode,
)
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.core.validation import ClockTimeValidator, LocationValidator
from app.db.models.market_event import EventKind, MarketEvent
from app.db.models.subscription import AlertFrequency, Subscription
from app.domain.matching import SubscriptionMatch, rank_matches

logger = get_logger(__name__)

# Fields update_subscription may touch; anything else is rejected
_UPDATABLE_FIELDS = {
    "name",
    "location_label",
    "preferred_source_ids",
    "blocked_source_ids",
    "quiet_hours_start",
    "quiet_hours_end",
    "active_days",
}


def validate_radius(radius_km: Any) -> int:
    """Radius must be one of the configured options."""
    try:
        value = int(radius_km)
    except (TypeError, ValueError):
        raise InvalidRadiusError(radius_km, settings.radius_options_km)
    if value != radius_km and str(value) != str(radius_km).strip():
        raise InvalidRadiusError(radius_km, settings.radius_options_km)
    if value not in settings.radius_options_km:
        raise InvalidRadiusError(radius_km, settings.radius_options_km)
    return value


def _validate_location(latitude: Any, longitude: Any) -> tuple[float, float]:
    try:
        lat, lng = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise InvalidLocationError(latitude, longitude)
    if not LocationValidator.is_valid(lat, lng):
        raise InvalidLocationError(latitude, longitude)
    return lat, lng


def _validate_frequency(frequency: Any) -> AlertFrequency:
    try:
        return AlertFrequency(frequency)
    except ValueError:
        raise ValidationException(
            f"Unknown alert frequency: {frequency}",
            field="alert_frequency",
            error_code=ErrorCode.INVALID_FREQUENCY,
        )


def _validate_quiet_hours(start: str | None, end: str | None) -> None:
    for field, value in (("quiet_hours_start", start), ("quiet_hours_end", end)):
        if value is not None and not ClockTimeValidator.validate(value):
            raise ValidationException(f"Invalid time '{value}', expected HH:MM", field=field)


def _validate_active_days(days: Iterable[int] | None) -> list[int] | None:
    if days is None:
        return None
    cleaned = sorted({int(day) for day in days})
    if any(day < 0 or day > 6 for day in cleaned):
        raise ValidationException("Active days must be 0 (Sunday) to 6 (Saturday)", field="active_days")
    return cleaned or None


class SubscriptionService:
    """Subscription CRUD and matching. Methods flush; the caller commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_subscription(self, subscription_id: int) -> Subscription:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.deleted_at.is_(None),
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def create_subscription(
        self,
        user_id: int,
        latitude: float,
        longitude: float,
        *,
        radius_km: int | None = None,
        type_ids: list[int] | None = None,
        alert_frequency: AlertFrequency | str = AlertFrequency.IMMEDIATE,
        event_kind: EventKind = EventKind.NEW_CATCH,
        name: str | None = None,
        location_label: str | None = None,
        quiet_hours_start: str | None = None,
        quiet_hours_end: str | None = None,
        active_days: list[int] | None = None,
    ) -> Subscription:
        """
        Create a subscription.

        An empty or missing type_ids list means all types.

        Raises:
            InvalidRadiusError: radius not in RADIUS_OPTIONS_KM.
            InvalidLocationError: coordinates out of range.
        """
        radius = validate_radius(radius_km if radius_km is not None else settings.DEFAULT_RADIUS_KM)
        lat, lng = _validate_location(latitude, longitude)
        frequency = _validate_frequency(alert_frequency)
        _validate_quiet_hours(quiet_hours_start, quiet_hours_end)
        types = sorted({int(type_id) for type_id in type_ids or []})

        subscription = Subscription(
            user_id=user_id,
            event_kind=event_kind,
            name=name,
            latitude=lat,
            longitude=lng,
            location_label=location_label,
            radius_km=radius,
            all_types=not types,
            type_ids=types,
            preferred_source_ids=[],
            blocked_source_ids=[],
            alert_frequency=frequency,
            quiet_hours_start=quiet_hours_start,
            quiet_hours_end=quiet_hours_end,
            active_days=_validate_active_days(active_days),
            is_active=True,
            is_paused=False,
            alerts_received=0,
            alerts_clicked=0,
        )
        self.db.add(subscription)
        await self.db.flush()

        logger.info(
            "Subscription created",
            extra_data={
                "subscription_id": subscription.id,
                "user_id": user_id,
                "radius_km": radius,
                "frequency": frequency.value,
                "all_types": subscription.all_types,
            },
        )
        return subscription

    async def update_subscription(self, subscription_id: int, **fields: Any) -> Subscription:
        """Update descriptive fields. Radius, types, frequency and location have their own setters."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationException(
                "Fields cannot be updated here", details={"fields": sorted(unknown)}
            )

        subscription = await self.get_subscription(subscription_id)
        _validate_quiet_hours(
            fields.get("quiet_hours_start", subscription.quiet_hours_start),
            fields.get("quiet_hours_end", subscription.quiet_hours_end),
        )
        if "active_days" in fields:
            fields["active_days"] = _validate_active_days(fields["active_days"])
        for key in ("preferred_source_ids", "blocked_source_ids"):
            if key in fields:
                fields[key] = sorted({int(v) for v in fields[key] or []})

        for key, value in fields.items():
            setattr(subscription, key, value)
        await self.db.flush()
        return subscription

    async def set_radius(self, subscription_id: int, radius_km: Any) -> Subscription:
        radius = validate_radius(radius_km)
        subscription = await self.get_subscription(subscription_id)
        subscription.radius_km = radius
        await self.db.flush()
        return subscription

    async def set_types(self, subscription_id: int, type_ids: list[int] | None) -> Subscription:
        """None or an empty list subscribes to all types."""
        subscription = await self.get_subscription(subscription_id)
        types = sorted({int(type_id) for type_id in type_ids or []})
        subscription.type_ids = types
        subscription.all_types = not types
        await self.db.flush()
        return subscription

    async def set_frequency(self, subscription_id: int, frequency: AlertFrequency | str) -> Subscription:
        """Takes effect for future events; an existing pending batch still goes out."""
        subscription = await self.get_subscription(subscription_id)
        subscription.alert_frequency = _validate_frequency(frequency)
        await self.db.flush()
        return subscription

    async def update_location(
        self,
        subscription_id: int,
        latitude: float,
        longitude: float,
        location_label: str | None = None,
    ) -> Subscription:
        lat, lng = _validate_location(latitude, longitude)
        subscription = await self.get_subscription(subscription_id)
        subscription.latitude = lat
        subscription.longitude = lng
        if location_label is not None:
            subscription.location_label = location_label
        await self.db.flush()
        return subscription

    async def pause(
        self,
        subscription_id: int,
        until: datetime | None = None,
        *,
        days: int | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Pause indefinitely, until a timestamp, or for a number of days."""
        subscription = await self.get_subscription(subscription_id)
        if days is not None:
            if days <= 0:
                raise ValidationException("Pause days must be positive", field="days")
            until = (now or utcnow()) + timedelta(days=days)
        subscription.is_paused = True
        subscription.paused_until = until
        await self.db.flush()
        logger.info(
            "Subscription paused",
            extra_data={
                "subscription_id": subscription.id,
                "paused_until": until.isoformat() if until else None,
            },
        )
        return subscription

    async def resume(self, subscription_id: int) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        subscription.is_paused = False
        subscription.paused_until = None
        await self.db.flush()
        logger.info("Subscription resumed", extra_data={"subscription_id": subscription.id})
        return subscription

    async def activate(self, subscription_id: int) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        subscription.is_active = True
        await self.db.flush()
        return subscription

    async def deactivate(self, subscription_id: int) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        subscription.is_active = False
        await self.db.flush()
        return subscription

    async def delete(self, subscription_id: int, now: datetime | None = None) -> None:
        """Soft delete; alerts and batches keep their history."""
        subscription = await self.get_subscription(subscription_id)
        subscription.is_active = False
        subscription.deleted_at = now or utcnow()
        await self.db.flush()
        logger.info("Subscription deleted", extra_data={"subscription_id": subscription.id})

    async def get_user_subscriptions(
        self,
        user_id: int,
        event_kind: EventKind | None = None,
        include_inactive: bool = False,
    ) -> list[Subscription]:
        query = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.deleted_at.is_(None),
        )
        if event_kind is not None:
            query = query.where(Subscription.event_kind == event_kind)
        if not include_inactive:
            query = query.where(Subscription.is_active.is_(True))
        result = await self.db.execute(query.order_by(Subscription.created_at, Subscription.id))
        return list(result.scalars().all())

    async def has_active_subscription(
        self,
        user_id: int,
        event_kind: EventKind = EventKind.NEW_CATCH,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        subscriptions = await self.get_user_subscriptions(user_id, event_kind)
        return any(sub.is_effectively_active(now) for sub in subscriptions)

    async def get_stats(self, subscription_id: int) -> dict[str, Any]:
        subscription = await self.get_subscription(subscription_id)
        return {
            "subscription_id": subscription.id,
            "alerts_received": subscription.alerts_received,
            "alerts_clicked": subscription.alerts_clicked,
            "click_rate": subscription.click_rate,
            "last_alert_at": subscription.last_alert_at,
        }

    async def find_matching(
        self,
        event: MarketEvent,
        now: datetime | None = None,
    ) -> list[SubscriptionMatch]:
        """Subscriptions that should hear about ``event``, nearest first."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.is_active.is_(True),
                Subscription.deleted_at.is_(None),
                Subscription.event_kind == event.kind,
            )
        )
        matches = rank_matches(list(result.scalars().all()), event, now)
        logger.debug(
            "Matched subscriptions for event",
            extra_data={"event_id": event.id, "matches": len(matches)},
        )
        return matches
