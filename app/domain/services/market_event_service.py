"""
Market Event Service - sellers posting catches, and their expiry
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidLocationError, MarketEventNotFoundError, MissingCapabilityError
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.core.validation import LocationValidator, TextSanitizer
from app.db.models.market_event import EventKind, MarketEvent
from app.db.models.user import Capability, User

logger = get_logger(__name__)


class MarketEventService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def post_catch(
        self,
        seller: User,
        *,
        type_name: str,
        latitude: float,
        longitude: float,
        type_id: int | None = None,
        price_per_kg: float | None = None,
        photo_media_id: str | None = None,
        location_label: str | None = None,
        description: str | None = None,
        now: datetime | None = None,
    ) -> MarketEvent:
        """
        Create a new-catch event. Matching and alerting is the caller's next step.

        Raises:
            MissingCapabilityError: user has no fish seller profile.
            InvalidLocationError: coordinates out of range.
        """
        if not seller.has_capability(Capability.FISH_SELLER):
            raise MissingCapabilityError(seller.id, Capability.FISH_SELLER.value)
        if not LocationValidator.is_valid(latitude, longitude):
            raise InvalidLocationError(latitude, longitude)

        now = now or utcnow()
        name = TextSanitizer.sanitize(type_name, max_length=100)
        event = MarketEvent(
            kind=EventKind.NEW_CATCH,
            source_id=seller.id,
            type_id=type_id,
            type_name=name,
            title=name,
            description=TextSanitizer.sanitize(description, max_length=1000) if description else None,
            price_per_kg=price_per_kg,
            photo_media_id=photo_media_id,
            latitude=latitude,
            longitude=longitude,
            location_label=location_label,
            is_active=True,
            expires_at=now + timedelta(hours=settings.CATCH_EXPIRY_HOURS),
            alerts_sent=0,
            customers_coming=0,
            messages_received=0,
        )
        self.db.add(event)
        await self.db.flush()

        logger.info(
            "Catch posted",
            extra_data={"event_id": event.id, "seller_id": seller.id, "type_id": type_id},
        )
        return event

    async def get_event(self, event_id: int) -> MarketEvent:
        event = await self.db.get(MarketEvent, event_id)
        if event is None:
            raise MarketEventNotFoundError(event_id)
        return event

    async def close_event(self, event_id: int) -> MarketEvent:
        """Seller marks the catch sold out; pending digests skip it."""
        event = await self.get_event(event_id)
        event.is_active = False
        await self.db.flush()
        return event

    async def expire_stale_events(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        result = await self.db.execute(
            update(MarketEvent)
            .where(
                MarketEvent.is_active.is_(True),
                MarketEvent.expires_at.is_not(None),
                MarketEvent.expires_at <= now,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        expired = result.rowcount or 0
        if expired:
            logger.info("Expired stale market events", extra_data={"count": expired})
        return expired
