"""
Delivery Log Model - audit trail of every outbound alert/digest attempt
"""
from sqlalchemy import Column, Integer, String, DateTime, Index

from app.core.timeutils import utcnow
from app.db.database import Base


class DeliveryLog(Base):
    """One row per send attempt, used for operator success-rate stats"""

    __tablename__ = "delivery_logs"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), nullable=False, index=True)
    notification_type = Column(String(30), nullable=False)  # alert | batch
    reference_id = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False)  # sent | failed
    provider_message_id = Column(String(200), nullable=True)
    error = Column(String(500), nullable=True)
    error_type = Column(String(50), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_delivery_logs_status_created", "status", "created_at"),
    )
