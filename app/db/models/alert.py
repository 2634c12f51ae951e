"""
Alert Model - one delivery record per (event, recipient)
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Boolean, ForeignKey, Index, UniqueConstraint,
)

from app.core.timeutils import utcnow
from app.db.database import Base, values_enum


class AlertStatus(str, enum.Enum):
    PENDING = "pending"      # waiting inside a batch
    QUEUED = "queued"        # ready for the immediate sender
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class AlertType(str, enum.Enum):
    NEW_CATCH = "new_catch"
    NEW_OFFER = "new_offer"
    JOB_MATCH = "job_match"
    LOW_STOCK = "low_stock"
    PRICE_DROP = "price_drop"


class ClickAction(str, enum.Enum):
    COMING = "coming"
    MESSAGE = "message"
    LOCATION = "location"
    DISMISS = "dismiss"


class Alert(Base):
    """Delivery record for one event to one user.

    distance_km is frozen when the alert is created.
    """

    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("market_events.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("alert_batches.id"), nullable=True, index=True)
    is_batched = Column(Boolean, nullable=False, default=False)

    alert_type = Column(values_enum(AlertType, "alert_type"), nullable=False, default=AlertType.NEW_CATCH)
    status = Column(values_enum(AlertStatus, "alert_status"), nullable=False, default=AlertStatus.PENDING)
    distance_km = Column(Float, nullable=True)

    scheduled_for = Column(DateTime, nullable=True)
    dispatch_claimed_at = Column(DateTime, nullable=True)
    queued_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    provider_message_id = Column(String(200), nullable=True, index=True)

    was_clicked = Column(Boolean, nullable=False, default=False)
    clicked_at = Column(DateTime, nullable=True)
    click_action = Column(values_enum(ClickAction, "click_action"), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_alerts_event_user"),
        Index("ix_alerts_status_scheduled", "status", "scheduled_for"),
    )
