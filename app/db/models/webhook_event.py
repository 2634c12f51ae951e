"""
Webhook Event Model - idempotency table for inbound provider messages.

Only rows with status=completed block a redelivery; a row stuck in
processing past the stale threshold may be retried.
"""
from sqlalchemy import Column, String, DateTime, Index

from app.core.timeutils import utcnow
from app.db.database import Base


class WebhookEvent(Base):
    """Inbound message id seen from a webhook"""

    __tablename__ = "webhook_events"

    message_id = Column(String(200), primary_key=True)
    platform = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
