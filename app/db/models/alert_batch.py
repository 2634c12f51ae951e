"""
Alert Batch Model - digest of events for one subscription and frequency
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, Index, text

from app.core.timeutils import utcnow
from app.db.database import Base, values_enum
from app.db.models.subscription import AlertFrequency


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class AlertBatch(Base):
    """Accumulates event ids until scheduled_for, then goes out as one message.

    At most one pending batch per (subscription, frequency); the partial
    unique index enforces it under concurrent creators.
    """

    __tablename__ = "alert_batches"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    frequency = Column(values_enum(AlertFrequency, "alert_frequency"), nullable=False)
    status = Column(values_enum(BatchStatus, "batch_status"), nullable=False, default=BatchStatus.PENDING)
    scheduled_for = Column(DateTime, nullable=False, index=True)

    event_ids = Column(JSON, default=list)  # ordered, no duplicates
    item_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    processing_started_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    provider_message_id = Column(String(200), nullable=True, index=True)

    was_opened = Column(Boolean, nullable=False, default=False)
    opened_at = Column(DateTime, nullable=True)
    clicks_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_alert_batches_one_pending",
            "subscription_id",
            "frequency",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_alert_batches_status_scheduled", "status", "scheduled_for"),
    )
