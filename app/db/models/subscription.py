"""
Subscription Model - "alert me about X near Y"
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, ForeignKey, JSON, Index

from app.core.timeutils import utcnow
from app.db.database import Base, values_enum
from app.db.models.market_event import EventKind


class AlertFrequency(str, enum.Enum):
    IMMEDIATE = "immediate"
    MORNING_ONLY = "morning_only"
    TWICE_DAILY = "twice_daily"
    WEEKLY_DIGEST = "weekly_digest"

    @property
    def is_batched(self) -> bool:
        return self != AlertFrequency.IMMEDIATE

    @property
    def label(self) -> str:
        return _FREQUENCY_LABELS[self]


_FREQUENCY_LABELS = {
    AlertFrequency.IMMEDIATE: "Immediately",
    AlertFrequency.MORNING_ONLY: "Every morning (6 AM)",
    AlertFrequency.TWICE_DAILY: "Twice a day (6 AM & 4 PM)",
    AlertFrequency.WEEKLY_DIGEST: "Weekly (Sunday 8 AM)",
}


class Subscription(Base):
    """A user's standing request for alerts within a radius of a location"""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_kind = Column(values_enum(EventKind, "event_kind"), nullable=False, default=EventKind.NEW_CATCH)
    name = Column(String(100), nullable=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_label = Column(String(255), nullable=True)
    radius_km = Column(Integer, nullable=False, default=5)

    all_types = Column(Boolean, nullable=False, default=True)
    type_ids = Column(JSON, default=list)
    preferred_source_ids = Column(JSON, default=list)
    blocked_source_ids = Column(JSON, default=list)

    alert_frequency = Column(
        values_enum(AlertFrequency, "alert_frequency"),
        nullable=False,
        default=AlertFrequency.IMMEDIATE,
    )
    quiet_hours_start = Column(String(5), nullable=True)  # "HH:MM" local time
    quiet_hours_end = Column(String(5), nullable=True)
    active_days = Column(JSON, nullable=True)  # 0=Sunday..6=Saturday; NULL = every day

    is_active = Column(Boolean, nullable=False, default=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    paused_until = Column(DateTime, nullable=True)

    alerts_received = Column(Integer, nullable=False, default=0)
    alerts_clicked = Column(Integer, nullable=False, default=0)
    last_alert_at = Column(DateTime, nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_subscriptions_active_kind", "is_active", "event_kind"),
    )

    def is_effectively_active(self, now: datetime) -> bool:
        """Active, not deleted, and either unpaused or past paused_until."""
        if not self.is_active or self.deleted_at is not None:
            return False
        if not self.is_paused:
            return True
        return self.paused_until is not None and self.paused_until < now

    @property
    def click_rate(self) -> float:
        if not self.alerts_received:
            return 0.0
        return round(self.alerts_clicked / self.alerts_received * 100, 1)
