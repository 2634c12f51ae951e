"""
Tests for AlertService (app/domain/services/alert_service.py)

Covers:
- event processing: immediate vs batched, one alert per user, own events
- alert status transitions
- queued alert sending (text/image, delivery log, counters, failures)
- clicks, provider status callbacks, event stats and cleanup
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import MarketEventNotFoundError
from app.core.timeutils import utcnow
from app.db.models.alert import Alert, AlertStatus, ClickAction
from app.db.models.alert_batch import AlertBatch, BatchStatus
from app.db.models.delivery_log import DeliveryLog
from app.db.models.subscription import AlertFrequency
from app.domain.services import messages
from app.domain.services.alert_service import AlertService, can_transition
from app.domain.services.batch_service import REASON_EVENT_UNAVAILABLE
from tests.conftest import ERNAKULAM, KOCHI, NOW


async def _alerts(db: AsyncSession) -> list[Alert]:
    result = await db.execute(select(Alert).order_by(Alert.id).execution_options(populate_existing=True))
    return list(result.scalars().all())


class TestProcessEvent:
    @pytest.mark.integration
    async def test_immediate_subscriber_gets_queued_alert(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        subscription = await subscription_factory(buyer)
        event = await event_factory(seller)

        stats = await AlertService(db_session, provider=fake_provider).process_event(event, NOW)

        assert stats == {"total": 1, "immediate": 1, "batched": 0, "skipped": 0}
        alert = (await _alerts(db_session))[0]
        assert alert.status == AlertStatus.QUEUED
        assert alert.subscription_id == subscription.id
        assert alert.is_batched is False
        assert alert.queued_at == NOW
        assert alert.distance_km == pytest.approx(0.98, abs=0.05)
        # nothing goes out until the sender sweep runs
        assert fake_provider.sent == []

    @pytest.mark.integration
    async def test_batched_subscriber_gets_pending_alert_in_batch(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer, frequency=AlertFrequency.MORNING_ONLY)
        event = await event_factory(seller)

        stats = await AlertService(db_session).process_event(event, NOW)

        assert stats["batched"] == 1
        batch = (await db_session.execute(select(AlertBatch))).scalar_one()
        alert = (await _alerts(db_session))[0]
        assert alert.status == AlertStatus.PENDING
        assert alert.batch_id == batch.id
        assert alert.scheduled_for == batch.scheduled_for
        assert batch.event_ids == [event.id]
        assert batch.item_count == 1

    @pytest.mark.integration
    async def test_one_alert_per_user_from_nearest_subscription(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer, location=ERNAKULAM, radius_km=10)
        nearest = await subscription_factory(buyer, location=KOCHI, radius_km=5)
        event = await event_factory(seller)

        stats = await AlertService(db_session).process_event(event, NOW)

        assert stats == {"total": 2, "immediate": 1, "batched": 0, "skipped": 1}
        alerts = await _alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].subscription_id == nearest.id

    @pytest.mark.integration
    async def test_reprocessing_does_not_duplicate(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session)

        await service.process_event(event, NOW)
        stats = await service.process_event(event, NOW)

        assert stats["skipped"] == 1
        assert len(await _alerts(db_session)) == 1

    @pytest.mark.integration
    async def test_batch_claimed_before_append_moves_alert_to_new_batch(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer, frequency=AlertFrequency.MORNING_ONLY)
        service = AlertService(db_session)
        await service.process_event(await event_factory(seller, title="Sardine"), NOW)
        claimed = (await db_session.execute(select(AlertBatch))).scalar_one()
        add_item = service.batches.add_item

        async def claim_then_add(batch, event_id):
            # a dispatcher claims the batch right after it was acquired
            if batch.id == claimed.id:
                await db_session.execute(
                    update(AlertBatch)
                    .where(AlertBatch.id == claimed.id)
                    .values(status=BatchStatus.PROCESSING)
                )
            return await add_item(batch, event_id)

        prawns = await event_factory(seller, title="Prawns")
        with patch.object(service.batches, "add_item", claim_then_add):
            stats = await service.process_event(prawns, NOW)

        assert stats == {"total": 1, "immediate": 0, "batched": 1, "skipped": 0}
        batches = (
            await db_session.execute(
                select(AlertBatch).order_by(AlertBatch.id).execution_options(populate_existing=True)
            )
        ).scalars().all()
        assert [b.status for b in batches] == [BatchStatus.PROCESSING, BatchStatus.PENDING]
        assert batches[0].event_ids != [] and prawns.id not in batches[0].event_ids
        assert batches[1].event_ids == [prawns.id]
        alert = next(a for a in await _alerts(db_session) if a.event_id == prawns.id)
        assert alert.status == AlertStatus.PENDING
        assert alert.batch_id == batches[1].id

    @pytest.mark.integration
    async def test_event_already_in_pending_batch_is_skipped(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        subscription = await subscription_factory(buyer, frequency=AlertFrequency.MORNING_ONLY)
        event = await event_factory(seller)
        service = AlertService(db_session)
        batch = await service.batches.get_or_create_pending(subscription, NOW)
        await service.batches.add_item(batch, event.id)

        stats = await service.process_event(event, NOW)

        assert stats == {"total": 1, "immediate": 0, "batched": 0, "skipped": 1}
        assert await _alerts(db_session) == []

    @pytest.mark.integration
    async def test_seller_is_not_alerted_about_own_catch(
        self, db_session, seller, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(seller)
        event = await event_factory(seller)

        stats = await AlertService(db_session).process_event(event, NOW)

        assert stats["total"] == 0
        assert await _alerts(db_session) == []

    @pytest.mark.integration
    async def test_unavailable_event_creates_nothing(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller, is_active=False)

        stats = await AlertService(db_session).process_event(event, NOW)

        assert stats == {"total": 0, "immediate": 0, "batched": 0, "skipped": 0}


class TestTransitions:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current, target, allowed",
        [
            (AlertStatus.PENDING, AlertStatus.QUEUED, True),
            (AlertStatus.PENDING, AlertStatus.SENT, True),
            (AlertStatus.QUEUED, AlertStatus.SENT, True),
            (AlertStatus.SENT, AlertStatus.DELIVERED, True),
            (AlertStatus.SENT, AlertStatus.FAILED, True),
            (AlertStatus.QUEUED, AlertStatus.DELIVERED, False),
            (AlertStatus.SENT, AlertStatus.QUEUED, False),
            (AlertStatus.DELIVERED, AlertStatus.FAILED, False),
            (AlertStatus.FAILED, AlertStatus.QUEUED, False),
        ],
    )
    def test_transition_table(self, current, target, allowed) -> None:
        assert can_transition(current, target) is allowed

    @pytest.mark.integration
    async def test_refused_transition_leaves_alert_untouched(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session)
        await service.process_event(event, NOW)
        alert = (await _alerts(db_session))[0]

        assert await service.mark_delivered(alert, NOW) is False
        assert alert.status == AlertStatus.QUEUED
        assert alert.delivered_at is None


class TestSendQueuedAlerts:
    @pytest.mark.integration
    async def test_text_alert_sent_and_logged(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        subscription = await subscription_factory(buyer)
        event = await event_factory(seller, location_label="Fort Kochi beach")
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)

        stats = await service.send_queued_alerts(now=NOW)

        assert stats == {"claimed": 1, "sent": 1, "failed": 0}
        sent = fake_provider.sent[0]
        assert sent["kind"] == "text"
        assert sent["to"] == buyer.phone
        assert sent["buttons"] == messages.ALERT_REPLY_OPTIONS
        assert "Sardine" in sent["text"]
        assert "Fort Kochi beach" in sent["text"]

        alert = (await _alerts(db_session))[0]
        assert alert.status == AlertStatus.SENT
        assert alert.sent_at == NOW
        assert alert.provider_message_id == sent["id"]

        log = (await db_session.execute(select(DeliveryLog))).scalar_one()
        assert log.status == "sent"
        assert log.notification_type == "alert"
        assert log.reference_id == alert.id

        await db_session.refresh(subscription)
        await db_session.refresh(event)
        assert subscription.alerts_received == 1
        assert subscription.last_alert_at == NOW
        assert event.alerts_sent == 1

    @pytest.mark.integration
    async def test_catch_with_photo_is_sent_as_image(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller, photo_media_id="media-123")
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)

        await service.send_queued_alerts(now=NOW)

        assert fake_provider.sent[0]["kind"] == "image"
        assert fake_provider.sent[0]["image"] == "media-123"

    @pytest.mark.integration
    async def test_send_failure_marks_alert_failed(
        self, db_session, seller, buyer, subscription_factory, event_factory, failing_provider
    ) -> None:
        subscription = await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session, provider=failing_provider)
        await service.process_event(event, NOW)

        stats = await service.send_queued_alerts(now=NOW)

        assert stats == {"claimed": 1, "sent": 0, "failed": 1}
        alert = (await _alerts(db_session))[0]
        assert alert.status == AlertStatus.FAILED
        assert "send_message failed" in alert.failure_reason

        log = (await db_session.execute(select(DeliveryLog))).scalar_one()
        assert log.status == "failed"
        assert log.error_type == "provider_error"

        await db_session.refresh(subscription)
        assert subscription.alerts_received == 0

    @pytest.mark.integration
    async def test_event_closed_before_send(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)
        event.is_active = False
        await db_session.commit()

        stats = await service.send_queued_alerts(now=NOW)

        assert stats["failed"] == 1
        assert fake_provider.sent == []
        alert = (await _alerts(db_session))[0]
        assert alert.failure_reason == REASON_EVENT_UNAVAILABLE

    @pytest.mark.integration
    async def test_claimed_alert_is_not_resent(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)
        alert = (await _alerts(db_session))[0]
        alert.dispatch_claimed_at = NOW
        await db_session.commit()

        stats = await service.send_queued_alerts(now=NOW + timedelta(seconds=30))

        assert stats["claimed"] == 0
        assert fake_provider.sent == []


class TestEngagement:
    async def _sent_alert(self, db_session, service, buyer, seller, subscription_factory, event_factory):
        subscription = await subscription_factory(buyer)
        event = await event_factory(seller)
        await service.process_event(event, NOW)
        await service.send_queued_alerts(now=NOW)
        return subscription, event, (await _alerts(db_session))[0]

    @pytest.mark.integration
    async def test_click_before_send_is_ignored(
        self, db_session, seller, buyer, subscription_factory, event_factory
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session)
        await service.process_event(event, NOW)
        alert = (await _alerts(db_session))[0]

        assert await service.record_click(alert, ClickAction.COMING) is False
        assert alert.was_clicked is False

    @pytest.mark.integration
    async def test_only_first_click_counts(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        service = AlertService(db_session, provider=fake_provider)
        subscription, event, alert = await self._sent_alert(
            db_session, service, buyer, seller, subscription_factory, event_factory
        )

        assert await service.record_click(alert, "message", NOW) is True
        assert await service.record_click(alert, ClickAction.COMING, NOW) is False

        assert alert.click_action == ClickAction.MESSAGE
        await db_session.refresh(subscription)
        await db_session.refresh(event)
        assert subscription.alerts_clicked == 1
        assert event.messages_received == 1
        assert event.customers_coming == 0

    @pytest.mark.integration
    async def test_delivered_then_read(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        service = AlertService(db_session, provider=fake_provider)
        _, _, alert = await self._sent_alert(db_session, service, buyer, seller, subscription_factory, event_factory)

        assert await service.handle_status_callback(alert.provider_message_id, "delivered", now=NOW) == 1
        assert await service.handle_status_callback(alert.provider_message_id, "read", now=NOW) == 0

        alert = (await _alerts(db_session))[0]
        assert alert.status == AlertStatus.DELIVERED
        assert alert.delivered_at == NOW

    @pytest.mark.integration
    async def test_failed_receipt(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        service = AlertService(db_session, provider=fake_provider)
        _, _, alert = await self._sent_alert(db_session, service, buyer, seller, subscription_factory, event_factory)

        changed = await service.handle_status_callback(
            alert.provider_message_id, "failed", "131026: Message undeliverable"
        )

        assert changed == 1
        alert = (await _alerts(db_session))[0]
        assert alert.status == AlertStatus.FAILED
        assert alert.failure_reason == "131026: Message undeliverable"

    @pytest.mark.integration
    async def test_unknown_message_id(self, db_session) -> None:
        service = AlertService(db_session)
        assert await service.handle_status_callback("wamid.unknown", "delivered") == 0
        assert await service.handle_status_callback("", "delivered") == 0

    @pytest.mark.integration
    async def test_read_receipt_opens_digest(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer, frequency=AlertFrequency.TWICE_DAILY)
        event = await event_factory(seller)
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)
        batch = (await db_session.execute(select(AlertBatch))).scalar_one()
        assert await service.batches.dispatch(batch.id, now=batch.scheduled_for) is True

        changed = await service.handle_status_callback(fake_provider.sent[0]["id"], "read", now=NOW)

        assert changed == 1
        await db_session.refresh(batch)
        assert batch.status == BatchStatus.SENT
        assert batch.was_opened is True


class TestStatsAndCleanup:
    @pytest.mark.integration
    async def test_event_stats(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer)
        event = await event_factory(seller)
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)
        await service.send_queued_alerts(now=NOW)
        await service.record_click((await _alerts(db_session))[0], ClickAction.COMING, NOW)

        stats = await service.get_event_stats(event.id)

        assert stats["total"] == 1
        assert stats["by_status"] == {"sent": 1}
        assert stats["by_action"] == {"coming": 1}
        assert stats["click_rate"] == 100.0
        assert stats["alerts_sent"] == 1
        assert stats["customers_coming"] == 1

    @pytest.mark.integration
    async def test_event_stats_unknown_event(self, db_session) -> None:
        with pytest.raises(MarketEventNotFoundError):
            await AlertService(db_session).get_event_stats(999)

    @pytest.mark.integration
    async def test_cleanup_keeps_open_alerts(
        self, db_session, seller, buyer, user_factory, subscription_factory, event_factory, fake_provider
    ) -> None:
        other = await user_factory(phone="+919800000003", name="Joy")
        await subscription_factory(buyer)
        await subscription_factory(other)
        event = await event_factory(seller)
        service = AlertService(db_session, provider=fake_provider)
        await service.process_event(event, NOW)
        await service.send_queued_alerts(limit=1, now=NOW)

        stats = await service.cleanup_old_alerts(days=30, now=utcnow() + timedelta(days=31))
        await db_session.commit()

        assert stats["alerts"] == 1
        remaining = await _alerts(db_session)
        assert [alert.status for alert in remaining] == [AlertStatus.QUEUED]
