"""
Market Event Model - the thing subscribers get alerted about
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, ForeignKey, Text, Index

from app.core.timeutils import utcnow
from app.db.database import Base, values_enum


class EventKind(str, enum.Enum):
    NEW_CATCH = "new_catch"
    NEW_OFFER = "new_offer"
    JOB_MATCH = "job_match"


class MarketEvent(Base):
    """A new catch, shop offer or job posting at a location"""

    __tablename__ = "market_events"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(values_enum(EventKind, "event_kind"), nullable=False, default=EventKind.NEW_CATCH)
    source_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # seller / shop / poster
    type_id = Column(Integer, nullable=True)  # fish type / category
    type_name = Column(String(100), nullable=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_label = Column(String(255), nullable=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price_per_kg = Column(Float, nullable=True)
    photo_media_id = Column(String(200), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)

    alerts_sent = Column(Integer, nullable=False, default=0)
    customers_coming = Column(Integer, nullable=False, default=0)
    messages_received = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_market_events_kind_active", "kind", "is_active"),
    )

    def is_available(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now
