"""
Delivery Log Service - audit rows for outbound sends and operator statistics
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError, ServiceTimeoutError, WhatsAppError
from app.core.timeutils import utcnow
from app.core.validation import truncate_reason
from app.db.models.delivery_log import DeliveryLog

STATUS_SENT = "sent"
STATUS_FAILED = "failed"


def classify_error(exc: BaseException) -> str:
    """Coarse error bucket for the per-error-type counters."""
    if isinstance(exc, CircuitBreakerOpenError):
        return "circuit_open"
    if isinstance(exc, (ServiceTimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(exc, WhatsAppError):
        cause = exc.details.get("error_type") if exc.details else None
        if cause and "timeout" in cause.lower():
            return "timeout"
        return "provider_error"
    if isinstance(exc, (ConnectionError, OSError)):
        return "connection"
    return "unknown"


class DeliveryLogService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        *,
        phone: str,
        notification_type: str,
        reference_id: int | None,
        status: str,
        provider_message_id: str | None = None,
        error: str | None = None,
        error_type: str | None = None,
        duration_ms: int | None = None,
    ) -> DeliveryLog:
        entry = DeliveryLog(
            phone=phone,
            notification_type=notification_type,
            reference_id=reference_id,
            status=status,
            provider_message_id=provider_message_id,
            error=truncate_reason(error, settings.FAILURE_REASON_MAX_LENGTH),
            error_type=error_type,
            duration_ms=duration_ms,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_stats(self, hours: int = 24, now: datetime | None = None) -> dict[str, Any]:
        """Success rate and failure breakdown for the last ``hours``."""
        since = (now or utcnow()) - timedelta(hours=hours)

        status_rows = await self.db.execute(
            select(DeliveryLog.status, func.count(DeliveryLog.id))
            .where(DeliveryLog.created_at >= since)
            .group_by(DeliveryLog.status)
        )
        by_status = {status: count for status, count in status_rows.all()}

        error_rows = await self.db.execute(
            select(DeliveryLog.error_type, func.count(DeliveryLog.id))
            .where(
                DeliveryLog.created_at >= since,
                DeliveryLog.status == STATUS_FAILED,
            )
            .group_by(DeliveryLog.error_type)
        )
        by_error_type = {error_type or "unknown": count for error_type, count in error_rows.all()}

        type_rows = await self.db.execute(
            select(DeliveryLog.notification_type, func.count(DeliveryLog.id))
            .where(DeliveryLog.created_at >= since)
            .group_by(DeliveryLog.notification_type)
        )
        by_notification_type = {kind: count for kind, count in type_rows.all()}

        total = sum(by_status.values())
        sent = by_status.get(STATUS_SENT, 0)
        return {
            "period_hours": hours,
            "total": total,
            "sent": sent,
            "failed": by_status.get(STATUS_FAILED, 0),
            "success_rate": round(sent / total * 100, 1) if total else 0.0,
            "by_status": by_status,
            "by_error_type": by_error_type,
            "by_notification_type": by_notification_type,
        }
