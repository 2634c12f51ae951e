"""
Alert Service - matching events to subscribers and moving alerts through their lifecycle

Alert states:
    pending -> queued -> sent -> delivered
    pending -> sent          (released as part of a batch digest)
    pending | queued | sent -> failed

Transitions outside this table are refused with a False return; an alert
never moves backwards.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import MarketEventNotFoundError
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.core.validation import PhoneNumberValidator, truncate_reason
from app.db.models.alert import Alert, AlertStatus, AlertType, ClickAction
from app.db.models.alert_batch import AlertBatch, BatchStatus
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import AlertFrequency
from app.db.models.user import User
from app.domain.events import AlertClicked, AlertSent, DomainEventBus, get_event_bus
from app.domain.services import messages
from app.domain.services.batch_service import BatchScheduler, REASON_EVENT_UNAVAILABLE
from app.domain.services.delivery_log_service import (
    STATUS_FAILED,
    STATUS_SENT,
    DeliveryLogService,
    classify_error,
)
from app.domain.services.subscription_service import SubscriptionService
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

NOTIFICATION_TYPE = "alert"

ALERT_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({AlertStatus.QUEUED, AlertStatus.SENT, AlertStatus.FAILED}),
    AlertStatus.QUEUED: frozenset({AlertStatus.SENT, AlertStatus.FAILED}),
    AlertStatus.SENT: frozenset({AlertStatus.DELIVERED, AlertStatus.FAILED}),
    AlertStatus.DELIVERED: frozenset(),
    AlertStatus.FAILED: frozenset(),
}

_CLICKABLE = {AlertStatus.SENT, AlertStatus.DELIVERED}

# Cloud API status callback values
_STATUS_DELIVERED = {"delivered", "read"}
_STATUS_FAILED = {"failed"}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in ALERT_TRANSITIONS.get(AlertStatus(current), frozenset())


def _alert_type_for(event: MarketEvent) -> AlertType:
    return AlertType(event.kind.value)


class AlertService:
    """Alert creation, sending and status tracking. Methods flush unless noted."""

    def __init__(
        self,
        db: AsyncSession,
        provider: BaseWhatsAppProvider | None = None,
        event_bus: DomainEventBus | None = None,
    ):
        self.db = db
        self._provider = provider
        self._event_bus = event_bus
        self.batches = BatchScheduler(db, provider=provider, event_bus=event_bus)

    @property
    def provider(self) -> BaseWhatsAppProvider:
        if self._provider is None:
            from app.domain.services.whatsapp import get_whatsapp_provider

            self._provider = get_whatsapp_provider()
        return self._provider

    @property
    def event_bus(self) -> DomainEventBus:
        return self._event_bus or get_event_bus()

    # ==================== Event processing ====================

    async def process_event(self, event: MarketEvent, now: datetime | None = None) -> dict[str, int]:
        """
        Create alerts for every subscription matching ``event``.

        Immediate subscribers get a queued alert for the sender sweep;
        batched subscribers get a pending alert appended to their pending
        batch. A user matched by several subscriptions gets one alert, from
        the nearest subscription.
        """
        now = now or utcnow()
        stats = {"total": 0, "immediate": 0, "batched": 0, "skipped": 0}

        if not event.is_available(now):
            logger.info("Event not available, no alerts", extra_data={"event_id": event.id})
            return stats

        matches = await SubscriptionService(self.db).find_matching(event, now)
        stats["total"] = len(matches)

        existing = await self.db.execute(select(Alert.user_id).where(Alert.event_id == event.id))
        alerted_users = set(existing.scalars().all())

        for match in matches:
            subscription = match.subscription
            if subscription.user_id in alerted_users:
                stats["skipped"] += 1
                continue

            is_batched = subscription.alert_frequency != AlertFrequency.IMMEDIATE
            batch = None

            try:
                # the append and the alert insert stand or fall together
                async with self.db.begin_nested():
                    if is_batched:
                        batch = await self.batches.append_to_pending(subscription, event.id, now)
                        if batch is None:
                            stats["skipped"] += 1
                            alerted_users.add(subscription.user_id)
                            continue
                    alert = Alert(
                        event_id=event.id,
                        subscription_id=subscription.id,
                        user_id=subscription.user_id,
                        alert_type=_alert_type_for(event),
                        distance_km=match.distance_km,
                        is_batched=is_batched,
                        batch_id=batch.id if batch else None,
                        status=AlertStatus.PENDING if is_batched else AlertStatus.QUEUED,
                        queued_at=None if is_batched else now,
                        scheduled_for=batch.scheduled_for if batch else now,
                    )
                    self.db.add(alert)
            except IntegrityError:
                # another worker alerted this user for this event first
                stats["skipped"] += 1
                alerted_users.add(subscription.user_id)
                continue

            alerted_users.add(subscription.user_id)
            if batch is not None:
                stats["batched"] += 1
            else:
                stats["immediate"] += 1

        await self.db.flush()
        logger.info("Processed event for alerts", extra_data={"event_id": event.id, **stats})
        return stats

    # ==================== Transitions ====================

    def _refuse(self, alert: Alert, target: AlertStatus) -> bool:
        logger.warning(
            "Invalid alert transition refused",
            extra_data={"alert_id": alert.id, "current": AlertStatus(alert.status).value, "target": target.value},
        )
        return False

    async def mark_queued(self, alert: Alert, now: datetime | None = None) -> bool:
        if not can_transition(alert.status, AlertStatus.QUEUED):
            return self._refuse(alert, AlertStatus.QUEUED)
        now = now or utcnow()
        alert.status = AlertStatus.QUEUED
        alert.queued_at = now
        alert.scheduled_for = alert.scheduled_for or now
        await self.db.flush()
        return True

    async def mark_sent(
        self,
        alert: Alert,
        provider_message_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Immediate alerts publish AlertSent; batched ones are counted by BatchSent."""
        if not can_transition(alert.status, AlertStatus.SENT):
            return self._refuse(alert, AlertStatus.SENT)
        now = now or utcnow()
        alert.status = AlertStatus.SENT
        alert.sent_at = now
        alert.provider_message_id = provider_message_id
        await self.db.flush()
        if not alert.is_batched:
            await self.event_bus.publish(
                self.db,
                AlertSent(
                    alert_id=alert.id,
                    subscription_id=alert.subscription_id,
                    event_id=alert.event_id,
                    sent_at=now,
                ),
            )
        return True

    async def mark_delivered(self, alert: Alert, now: datetime | None = None) -> bool:
        if not can_transition(alert.status, AlertStatus.DELIVERED):
            return self._refuse(alert, AlertStatus.DELIVERED)
        alert.status = AlertStatus.DELIVERED
        alert.delivered_at = now or utcnow()
        await self.db.flush()
        return True

    async def mark_failed(self, alert: Alert, reason: str | None, now: datetime | None = None) -> bool:
        if not can_transition(alert.status, AlertStatus.FAILED):
            return self._refuse(alert, AlertStatus.FAILED)
        alert.status = AlertStatus.FAILED
        alert.failed_at = now or utcnow()
        alert.failure_reason = truncate_reason(reason, settings.FAILURE_REASON_MAX_LENGTH)
        await self.db.flush()
        return True

    # ==================== Sending ====================

    async def _claim_queued(self, limit: int, now: datetime) -> list[int]:
        """Mark up to ``limit`` queued alerts as claimed by this run, nearest first."""
        stale_claim = now - timedelta(seconds=settings.ALERT_CLAIM_TIMEOUT_SECONDS)
        claimable = or_(Alert.dispatch_claimed_at.is_(None), Alert.dispatch_claimed_at < stale_claim)

        result = await self.db.execute(
            select(Alert.id)
            .where(Alert.status == AlertStatus.QUEUED, claimable)
            .order_by(Alert.distance_km, Alert.id)
            .limit(limit)
        )
        claimed = []
        for alert_id in result.scalars().all():
            outcome = await self.db.execute(
                update(Alert)
                .where(Alert.id == alert_id, Alert.status == AlertStatus.QUEUED, claimable)
                .values(dispatch_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 1:
                claimed.append(alert_id)
        await self.db.commit()
        return claimed

    async def send_queued_alerts(
        self,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """
        Send queued immediate alerts. Commits after the claim and after each send.
        """
        now = now or utcnow()
        claimed = await self._claim_queued(limit or settings.QUEUED_ALERTS_BATCH_SIZE, now)
        stats = {"claimed": len(claimed), "sent": 0, "failed": 0}

        for alert_id in claimed:
            result = await self.db.execute(
                select(Alert).where(Alert.id == alert_id).execution_options(populate_existing=True)
            )
            alert = result.scalar_one()
            if await self.send_alert(alert, now):
                stats["sent"] += 1
            else:
                stats["failed"] += 1
            await self.db.commit()

        if claimed:
            logger.info("Queued alerts processed", extra_data=stats)
        return stats

    async def send_alert(self, alert: Alert, now: datetime | None = None) -> bool:
        """Send one alert. Outcome is recorded on the alert and in the delivery log."""
        now = now or utcnow()
        event = await self.db.get(MarketEvent, alert.event_id)
        user = await self.db.get(User, alert.user_id)

        if event is None or not event.is_available(now):
            await self.mark_failed(alert, REASON_EVENT_UNAVAILABLE, now)
            return False
        if user is None:
            await self.mark_failed(alert, "recipient not found", now)
            return False

        text = messages.alert_text(event, alert.distance_km)
        log_service = DeliveryLogService(self.db)
        started = time.monotonic()
        try:
            if event.photo_media_id:
                send_result = await self.provider.send_image(user.phone, event.photo_media_id, caption=text)
            else:
                send_result = await self.provider.send_text(
                    user.phone, text, buttons=messages.ALERT_REPLY_OPTIONS
                )
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            await self.mark_failed(alert, str(exc), now)
            await log_service.record(
                phone=user.phone,
                notification_type=NOTIFICATION_TYPE,
                reference_id=alert.id,
                status=STATUS_FAILED,
                error=str(exc),
                error_type=classify_error(exc),
                duration_ms=duration_ms,
            )
            logger.error(
                "Alert send failed",
                extra_data={
                    "alert_id": alert.id,
                    "phone": PhoneNumberValidator.mask(user.phone),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return False

        duration_ms = int((time.monotonic() - started) * 1000)
        await self.mark_sent(alert, send_result.provider_message_id, now)
        await log_service.record(
            phone=user.phone,
            notification_type=NOTIFICATION_TYPE,
            reference_id=alert.id,
            status=STATUS_SENT,
            provider_message_id=send_result.provider_message_id,
            duration_ms=duration_ms,
        )
        logger.info(
            "Alert sent",
            extra_data={
                "alert_id": alert.id,
                "event_id": alert.event_id,
                "phone": PhoneNumberValidator.mask(user.phone),
                "distance_km": alert.distance_km,
                "duration_ms": duration_ms,
            },
        )
        return True

    # ==================== Engagement & receipts ====================

    async def record_click(
        self,
        alert: Alert,
        action: ClickAction | str,
        now: datetime | None = None,
    ) -> bool:
        """First click on a sent alert. Returns False before sent or on repeat clicks."""
        action = ClickAction(action)
        if alert.status not in _CLICKABLE or alert.was_clicked:
            return False

        now = now or utcnow()
        alert.was_clicked = True
        alert.clicked_at = now
        alert.click_action = action
        await self.db.flush()

        await self.event_bus.publish(
            self.db,
            AlertClicked(
                alert_id=alert.id,
                subscription_id=alert.subscription_id,
                event_id=alert.event_id,
                action=action.value,
            ),
        )
        if alert.batch_id is not None:
            await self.batches.record_click(alert.batch_id, now)
        return True

    async def find_latest_for_user(self, user_id: int) -> Alert | None:
        """Most recent clickable alert, used to attribute a plain-text reply."""
        result = await self.db.execute(
            select(Alert)
            .where(Alert.user_id == user_id, Alert.status.in_(list(_CLICKABLE)))
            .order_by(Alert.sent_at.desc(), Alert.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def handle_status_callback(
        self,
        provider_message_id: str,
        status: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Apply a provider delivery receipt to every alert sent with that
        message id (a digest covers several alerts). Returns how many
        alerts changed.
        """
        if not provider_message_id:
            return 0
        now = now or utcnow()
        status = (status or "").lower()

        result = await self.db.execute(
            select(Alert)
            .where(Alert.provider_message_id == provider_message_id)
            .execution_options(populate_existing=True)
        )
        changed = 0
        for alert in result.scalars().all():
            if status in _STATUS_DELIVERED:
                if AlertStatus(alert.status) == AlertStatus.SENT and await self.mark_delivered(alert, now):
                    changed += 1
            elif status in _STATUS_FAILED:
                if can_transition(alert.status, AlertStatus.FAILED) and await self.mark_failed(
                    alert, error or "provider reported failure", now
                ):
                    changed += 1

        if status == "read":
            batch_result = await self.db.execute(
                select(AlertBatch.id).where(
                    AlertBatch.provider_message_id == provider_message_id,
                    AlertBatch.status == BatchStatus.SENT,
                )
            )
            for batch_id in batch_result.scalars().all():
                await self.batches.record_opened(batch_id, now)

        if changed:
            logger.info(
                "Alert status callback applied",
                extra_data={"status": status, "alerts": changed},
            )
        return changed

    # ==================== Reporting & cleanup ====================

    async def get_event_stats(self, event_id: int) -> dict[str, Any]:
        event = await self.db.get(MarketEvent, event_id)
        if event is None:
            raise MarketEventNotFoundError(event_id)

        status_rows = await self.db.execute(
            select(Alert.status, func.count(Alert.id))
            .where(Alert.event_id == event_id)
            .group_by(Alert.status)
        )
        by_status = {AlertStatus(status).value: count for status, count in status_rows.all()}

        click_rows = await self.db.execute(
            select(Alert.click_action, func.count(Alert.id))
            .where(Alert.event_id == event_id, Alert.was_clicked.is_(True))
            .group_by(Alert.click_action)
        )
        by_action = {ClickAction(action).value: count for action, count in click_rows.all() if action}

        total = sum(by_status.values())
        clicks = sum(by_action.values())
        reached = by_status.get(AlertStatus.SENT.value, 0) + by_status.get(AlertStatus.DELIVERED.value, 0)
        return {
            "event_id": event_id,
            "total": total,
            "by_status": by_status,
            "clicks": clicks,
            "by_action": by_action,
            "click_rate": round(clicks / reached * 100, 1) if reached else 0.0,
            "alerts_sent": event.alerts_sent,
            "customers_coming": event.customers_coming,
        }

    async def cleanup_old_alerts(self, days: int | None = None, now: datetime | None = None) -> dict[str, int]:
        """Delete finished alerts and batches older than ``days``. Open ones are kept."""
        days = days or settings.ALERT_RETENTION_DAYS
        cutoff = (now or utcnow()) - timedelta(days=days)

        alerts_result = await self.db.execute(
            delete(Alert)
            .where(
                Alert.created_at < cutoff,
                Alert.status.in_([AlertStatus.SENT, AlertStatus.DELIVERED, AlertStatus.FAILED]),
            )
            .execution_options(synchronize_session=False)
        )
        batches_result = await self.db.execute(
            delete(AlertBatch)
            .where(
                AlertBatch.created_at < cutoff,
                AlertBatch.status.in_([BatchStatus.SENT, BatchStatus.FAILED]),
                ~exists().where(Alert.batch_id == AlertBatch.id),
            )
            .execution_options(synchronize_session=False)
        )
        stats = {"alerts": alerts_result.rowcount or 0, "batches": batches_result.rowcount or 0}
        logger.info("Cleaned up old alerts", extra_data={**stats, "cutoff_days": days})
        return stats
