"""
Tests for DeliveryLogService and error classification.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import CircuitBreakerOpenError, ServiceTimeoutError, WhatsAppError
from app.core.timeutils import utcnow
from app.db.models.delivery_log import DeliveryLog
from app.domain.services.delivery_log_service import (
    STATUS_FAILED,
    STATUS_SENT,
    DeliveryLogService,
    classify_error,
)


class TestClassifyError:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (CircuitBreakerOpenError("whatsapp_cloud", 12.0), "circuit_open"),
            (TimeoutError(), "timeout"),
            (WhatsAppError("send_text failed", details={"error_type": "ReadTimeout"}), "timeout"),
            (WhatsAppError("send_text failed", details={"error_type": "APIError"}), "provider_error"),
            (WhatsAppError("send_text failed"), "provider_error"),
            (ConnectionError("reset"), "connection"),
            (ValueError("bad"), "unknown"),
        ],
    )
    def test_buckets(self, exc: BaseException, expected: str) -> None:
        assert classify_error(exc) == expected

    @pytest.mark.unit
    def test_service_timeout(self) -> None:
        assert classify_error(ServiceTimeoutError("whatsapp_cloud", 10.0)) == "timeout"


class TestDeliveryLogService:

    @pytest.mark.integration
    async def test_record_truncates_error(self, db_session: AsyncSession) -> None:
        service = DeliveryLogService(db_session)

        entry = await service.record(
            phone="+919800000002",
            notification_type="alert",
            reference_id=7,
            status=STATUS_FAILED,
            error="x" * 2000,
            error_type="provider_error",
            duration_ms=120,
        )
        await db_session.commit()

        assert entry.id is not None
        assert len(entry.error) <= 500
        rows = (await db_session.execute(select(DeliveryLog))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.integration
    async def test_stats_empty(self, db_session: AsyncSession) -> None:
        stats = await DeliveryLogService(db_session).get_stats(hours=24)

        assert stats == {
            "period_hours": 24,
            "total": 0,
            "sent": 0,
            "failed": 0,
            "success_rate": 0.0,
            "by_status": {},
            "by_error_type": {},
            "by_notification_type": {},
        }

    @pytest.mark.integration
    async def test_stats_breakdown(self, db_session: AsyncSession) -> None:
        service = DeliveryLogService(db_session)
        for i in range(3):
            await service.record(
                phone="+919800000002", notification_type="alert",
                reference_id=i, status=STATUS_SENT, provider_message_id=f"wamid.{i}",
            )
        await service.record(
            phone="+919800000003", notification_type="batch",
            reference_id=10, status=STATUS_FAILED, error_type="timeout",
        )
        await service.record(
            phone="+919800000004", notification_type="alert",
            reference_id=11, status=STATUS_FAILED,
        )
        await db_session.commit()

        stats = await service.get_stats(hours=24)

        assert stats["total"] == 5
        assert stats["sent"] == 3
        assert stats["failed"] == 2
        assert stats["success_rate"] == 60.0
        assert stats["by_error_type"] == {"timeout": 1, "unknown": 1}
        assert stats["by_notification_type"] == {"alert": 4, "batch": 1}

    @pytest.mark.integration
    async def test_stats_window(self, db_session: AsyncSession) -> None:
        service = DeliveryLogService(db_session)
        old = DeliveryLog(
            phone="+919800000002", notification_type="alert", reference_id=1,
            status=STATUS_SENT, created_at=utcnow() - timedelta(hours=30),
        )
        db_session.add(old)
        await service.record(
            phone="+919800000002", notification_type="alert", reference_id=2, status=STATUS_SENT,
        )
        await db_session.commit()

        assert (await service.get_stats(hours=24))["total"] == 1
        assert (await service.get_stats(hours=48))["total"] == 2
