"""
Batch Scheduler - digest batches for subscriptions that don't want immediate alerts

Lifecycle: pending -> processing -> sent | failed.

- At most one pending batch per (subscription, frequency). The partial
  unique index decides concurrent creators; the loser re-reads the winner.
- A batch is claimed (pending -> processing, committed) before the digest is
  sent, so two dispatchers can't both send it.
- A batch stuck in processing (worker died mid-send) is recovered by
  recover_stale_processing.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.core.validation import PhoneNumberValidator, truncate_reason
from app.db.models.alert import Alert, AlertStatus
from app.db.models.alert_batch import AlertBatch, BatchStatus
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.domain.events import BatchSent, DomainEventBus, get_event_bus
from app.domain.scheduling import next_dispatch_time
from app.domain.services import messages
from app.domain.services.delivery_log_service import (
    STATUS_FAILED,
    STATUS_SENT,
    DeliveryLogService,
    classify_error,
)
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

NOTIFICATION_TYPE = "batch"

REASON_STALE = "stale processing"
REASON_SUBSCRIPTION_INACTIVE = "subscription inactive"
REASON_EVENT_UNAVAILABLE = "event no longer available"

# acquire-then-append rounds before giving up
_APPEND_ATTEMPTS = 3


class BatchScheduler:
    """
    get_or_create_pending/add_item/recover/reschedule flush and leave the
    commit to the caller. dispatch() owns its transactions: it commits the
    claim before sending and the outcome after.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: BaseWhatsAppProvider | None = None,
        event_bus: DomainEventBus | None = None,
    ):
        self.db = db
        self._provider = provider
        self._event_bus = event_bus

    @property
    def provider(self) -> BaseWhatsAppProvider:
        if self._provider is None:
            from app.domain.services.whatsapp import get_whatsapp_provider

            self._provider = get_whatsapp_provider()
        return self._provider

    @property
    def event_bus(self) -> DomainEventBus:
        return self._event_bus or get_event_bus()

    # ==================== Acquisition ====================

    async def _select_pending(self, subscription_id: int, frequency) -> AlertBatch | None:
        result = await self.db.execute(
            select(AlertBatch).where(
                AlertBatch.subscription_id == subscription_id,
                AlertBatch.frequency == frequency,
                AlertBatch.status == BatchStatus.PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create_pending(
        self,
        subscription: Subscription,
        now: datetime | None = None,
    ) -> AlertBatch:
        """
        The pending batch for the subscription's current frequency.

        An existing batch that is empty and already overdue gets a fresh
        scheduled_for, so a new item doesn't go out alone at a stale slot.
        """
        now = now or utcnow()
        frequency = subscription.alert_frequency

        batch = await self._select_pending(subscription.id, frequency)
        if batch is not None:
            if batch.item_count == 0 and batch.scheduled_for <= now:
                batch.scheduled_for = next_dispatch_time(frequency, now)
                await self.db.flush()
            return batch

        try:
            async with self.db.begin_nested():
                batch = AlertBatch(
                    subscription_id=subscription.id,
                    user_id=subscription.user_id,
                    frequency=frequency,
                    status=BatchStatus.PENDING,
                    scheduled_for=next_dispatch_time(frequency, now),
                    event_ids=[],
                    item_count=0,
                    sent_count=0,
                    failed_count=0,
                )
                self.db.add(batch)
            logger.info(
                "Alert batch created",
                extra_data={
                    "batch_id": batch.id,
                    "subscription_id": subscription.id,
                    "frequency": frequency.value,
                    "scheduled_for": batch.scheduled_for.isoformat(),
                },
            )
            return batch
        except IntegrityError:
            logger.debug(
                "Pending batch created concurrently, re-reading",
                extra_data={"subscription_id": subscription.id, "frequency": frequency.value},
            )

        batch = await self._select_pending(subscription.id, frequency)
        if batch is None:
            raise RuntimeError("pending batch vanished after unique violation")
        return batch

    async def add_item(self, batch: AlertBatch, event_id: int) -> bool:
        """
        Append an event id to a pending batch.

        Returns False if the id is already there or the batch has left
        pending (claimed by a dispatcher in the meantime).
        """
        result = await self.db.execute(
            select(AlertBatch)
            .where(AlertBatch.id == batch.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        locked = result.scalar_one()
        if locked.status != BatchStatus.PENDING:
            return False

        current = list(locked.event_ids or [])
        if event_id in current:
            return False

        current.append(event_id)
        locked.event_ids = current
        locked.item_count = len(current)
        await self.db.flush()
        return True

    async def append_to_pending(
        self,
        subscription: Subscription,
        event_id: int,
        now: datetime | None = None,
    ) -> AlertBatch | None:
        """
        Put ``event_id`` into the subscription's pending batch.

        A batch claimed by a dispatcher between acquisition and append is no
        longer pending; the next acquisition opens a fresh one. Returns None
        when the pending batch already holds the event.
        """
        now = now or utcnow()
        for _ in range(_APPEND_ATTEMPTS):
            batch = await self.get_or_create_pending(subscription, now)
            if await self.add_item(batch, event_id):
                return batch
            if batch.status == BatchStatus.PENDING:
                return None
            logger.info(
                "Batch claimed before append, acquiring a new one",
                extra_data={"batch_id": batch.id, "subscription_id": subscription.id, "event_id": event_id},
            )
        raise RuntimeError(
            f"no pending batch for subscription {subscription.id} after {_APPEND_ATTEMPTS} attempts"
        )

    # ==================== Dispatch ====================

    async def ready_to_send(self, now: datetime | None = None, limit: int = 100) -> list[AlertBatch]:
        now = now or utcnow()
        result = await self.db.execute(
            select(AlertBatch)
            .where(
                AlertBatch.status == BatchStatus.PENDING,
                AlertBatch.scheduled_for <= now,
                AlertBatch.item_count > 0,
            )
            .order_by(AlertBatch.scheduled_for, AlertBatch.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _claim(self, batch_id: int, now: datetime) -> bool:
        result = await self.db.execute(
            update(AlertBatch)
            .where(AlertBatch.id == batch_id, AlertBatch.status == BatchStatus.PENDING)
            .values(status=BatchStatus.PROCESSING, processing_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _fail_batch(self, batch: AlertBatch, reason: str, now: datetime) -> None:
        reason = truncate_reason(reason, settings.FAILURE_REASON_MAX_LENGTH)
        batch.status = BatchStatus.FAILED
        batch.failed_at = now
        batch.failure_reason = reason
        batch.failed_count = batch.item_count
        await self.db.execute(
            update(Alert)
            .where(Alert.batch_id == batch.id, Alert.status == AlertStatus.PENDING)
            .values(status=AlertStatus.FAILED, failed_at=now, failure_reason=reason)
        )

    async def dispatch(self, batch_id: int, now: datetime | None = None) -> bool:
        """
        Send one due batch as a single digest message.

        Returns True when the digest went out. False when another worker
        claimed the batch first, or the send failed (batch -> failed, never
        retried in place).
        """
        now = now or utcnow()
        if not await self._claim(batch_id, now):
            logger.debug("Batch already claimed", extra_data={"batch_id": batch_id})
            return False

        result = await self.db.execute(
            select(AlertBatch)
            .where(AlertBatch.id == batch_id)
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one()
        subscription = await self.db.get(Subscription, batch.subscription_id)
        user = await self.db.get(User, batch.user_id)

        if subscription is None or user is None or not subscription.is_active or subscription.deleted_at:
            await self._fail_batch(batch, REASON_SUBSCRIPTION_INACTIVE, now)
            await self.db.commit()
            logger.info(
                "Batch dropped, subscription inactive",
                extra_data={"batch_id": batch.id, "subscription_id": batch.subscription_id},
            )
            return False

        event_ids = list(batch.event_ids or [])
        events_result = await self.db.execute(select(MarketEvent).where(MarketEvent.id.in_(event_ids)))
        events = {event.id: event for event in events_result.scalars().all()}
        available_ids = [eid for eid in event_ids if eid in events and events[eid].is_available(now)]
        unavailable_ids = [eid for eid in event_ids if eid not in available_ids]

        alerts_result = await self.db.execute(select(Alert).where(Alert.batch_id == batch.id))
        distances = {alert.event_id: alert.distance_km for alert in alerts_result.scalars().all()}

        if unavailable_ids:
            await self.db.execute(
                update(Alert)
                .where(
                    Alert.batch_id == batch.id,
                    Alert.status == AlertStatus.PENDING,
                    Alert.event_id.in_(unavailable_ids),
                )
                .values(status=AlertStatus.FAILED, failed_at=now, failure_reason=REASON_EVENT_UNAVAILABLE)
            )

        if not available_ids:
            # nothing left worth sending
            batch.status = BatchStatus.SENT
            batch.sent_at = now
            batch.sent_count = 0
            batch.failed_count = len(unavailable_ids)
            await self.db.commit()
            logger.info("Batch had no available events, closed without sending", extra_data={"batch_id": batch.id})
            return False

        text = messages.digest_text(
            subscription, [(events[eid], distances.get(eid)) for eid in available_ids]
        )
        log_service = DeliveryLogService(self.db)
        started = time.monotonic()
        try:
            send_result = await self.provider.send_text(user.phone, text)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            await self._fail_batch(batch, str(exc), now)
            await log_service.record(
                phone=user.phone,
                notification_type=NOTIFICATION_TYPE,
                reference_id=batch.id,
                status=STATUS_FAILED,
                error=str(exc),
                error_type=classify_error(exc),
                duration_ms=duration_ms,
            )
            await self.db.commit()
            logger.error(
                "Batch digest send failed",
                extra_data={
                    "batch_id": batch.id,
                    "phone": PhoneNumberValidator.mask(user.phone),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return False

        duration_ms = int((time.monotonic() - started) * 1000)
        batch.status = BatchStatus.SENT
        batch.sent_at = now
        batch.sent_count = len(available_ids)
        batch.failed_count = len(unavailable_ids)
        batch.provider_message_id = send_result.provider_message_id
        await self.db.execute(
            update(Alert)
            .where(
                Alert.batch_id == batch.id,
                Alert.status == AlertStatus.PENDING,
                Alert.event_id.in_(available_ids),
            )
            .values(
                status=AlertStatus.SENT,
                sent_at=now,
                provider_message_id=send_result.provider_message_id,
            )
        )
        await log_service.record(
            phone=user.phone,
            notification_type=NOTIFICATION_TYPE,
            reference_id=batch.id,
            status=STATUS_SENT,
            provider_message_id=send_result.provider_message_id,
            duration_ms=duration_ms,
        )
        await self.event_bus.publish(
            self.db,
            BatchSent(
                batch_id=batch.id,
                subscription_id=batch.subscription_id,
                sent_at=now,
                event_ids=tuple(available_ids),
            ),
        )
        await self.db.commit()

        logger.info(
            "Batch digest sent",
            extra_data={
                "batch_id": batch.id,
                "phone": PhoneNumberValidator.mask(user.phone),
                "events": len(available_ids),
                "skipped_unavailable": len(unavailable_ids),
                "duration_ms": duration_ms,
            },
        )
        return True

    # ==================== Maintenance ====================

    async def recover_stale_processing(self, now: datetime | None = None) -> dict[str, int]:
        """
        Batches stuck in processing past the grace period go back to pending,
        unless a newer pending batch already exists for the pair, in which
        case they are failed.
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.BATCH_PROCESSING_GRACE_MINUTES)
        result = await self.db.execute(
            select(AlertBatch).where(
                AlertBatch.status == BatchStatus.PROCESSING,
                AlertBatch.processing_started_at < cutoff,
            )
        )
        requeued = failed = 0
        for batch in result.scalars().all():
            existing = await self._select_pending(batch.subscription_id, batch.frequency)
            if existing is None:
                try:
                    async with self.db.begin_nested():
                        batch.status = BatchStatus.PENDING
                        batch.processing_started_at = None
                    requeued += 1
                    continue
                except IntegrityError:
                    # a pending batch appeared meanwhile; the rolled-back row is reloaded below
                    await self.db.refresh(batch)
            await self._fail_batch(batch, REASON_STALE, now)
            failed += 1

        await self.db.flush()
        if requeued or failed:
            logger.warning(
                "Recovered stale processing batches",
                extra_data={"requeued": requeued, "failed": failed},
            )
        return {"requeued": requeued, "failed": failed}

    async def reschedule_dormant(self, now: datetime | None = None) -> int:
        """Move empty, overdue pending batches to their next slot."""
        now = now or utcnow()
        result = await self.db.execute(
            select(AlertBatch).where(
                AlertBatch.status == BatchStatus.PENDING,
                AlertBatch.item_count == 0,
                AlertBatch.scheduled_for <= now,
            )
        )
        count = 0
        for batch in result.scalars().all():
            batch.scheduled_for = next_dispatch_time(batch.frequency, now)
            count += 1
        await self.db.flush()
        if count:
            logger.info("Rescheduled dormant batches", extra_data={"count": count})
        return count

    # ==================== Engagement ====================

    async def record_opened(self, batch_id: int, now: datetime | None = None) -> bool:
        """First read receipt wins; later ones are ignored."""
        result = await self.db.execute(
            update(AlertBatch)
            .where(AlertBatch.id == batch_id, AlertBatch.was_opened.is_(False))
            .values(was_opened=True, opened_at=now or utcnow())
        )
        await self.db.flush()
        return result.rowcount == 1

    async def record_click(self, batch_id: int, now: datetime | None = None) -> None:
        await self.db.execute(
            update(AlertBatch)
            .where(AlertBatch.id == batch_id)
            .values(clicks_count=AlertBatch.clicks_count + 1)
        )
        await self.record_opened(batch_id, now)
