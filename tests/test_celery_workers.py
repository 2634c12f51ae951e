"""
Tests for the Celery workers (app/workers/tasks.py)

Covers:
- immediate alert sending and digest dispatch
- stale batch recovery and dormant rescheduling
- session timeouts, event expiry and the retention sweeps
- event loop handling for sync Celery tasks
- task database session lifecycle
- beat schedule wiring
"""
import asyncio
import logging
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from app.core.logging import clear_log_context, correlation_id_var, log_context_var
from app.core.timeutils import utcnow
from app.db.models.alert import Alert, AlertStatus
from app.db.models.alert_batch import AlertBatch, BatchStatus
from app.db.models.conversation_session import ConversationSession
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import AlertFrequency
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.alert_service import AlertService
from app.state_machine.manager import SessionManager
from app.state_machine.states import FlowType, SubscribeStep
from app.workers import tasks
from tests.conftest import NOW


@contextmanager
def _task_context(db_session):
    """
    Run a sync Celery task inside an async test.

    run_async is replaced so the task hands back its coroutine for the test
    to await on the running loop, and get_task_session yields the test
    session so the in-memory database is shared.
    """
    with patch("app.workers.tasks.run_async", side_effect=lambda coro: coro), \
         patch("app.workers.tasks.get_task_session") as mock_session_ctx:
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield


async def _all(db, model):
    result = await db.execute(select(model).execution_options(populate_existing=True))
    return list(result.scalars().all())


class TestAlertTasks:
    @pytest.mark.integration
    async def test_send_queued_alerts(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer)
        await AlertService(db_session).process_event(await event_factory(seller), NOW)
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.send_queued_alerts()

        assert result == {"claimed": 1, "sent": 1, "failed": 0}
        assert fake_provider.sent[0]["to"] == buyer.phone
        assert (await _all(db_session, Alert))[0].status == AlertStatus.SENT

    @pytest.mark.integration
    async def test_dispatch_ready_batches(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider, caplog
    ) -> None:
        caplog.set_level(logging.INFO, logger="app.workers.tasks")
        await subscription_factory(buyer, frequency=AlertFrequency.TWICE_DAILY)
        await AlertService(db_session).process_event(await event_factory(seller), NOW)
        batch = (await _all(db_session, AlertBatch))[0]
        batch.scheduled_for = utcnow() - timedelta(minutes=1)
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.dispatch_ready_batches()

        assert result == {"ready": 1, "sent": 1, "skipped": 0}
        assert len(fake_provider.sent) == 1
        assert (await _all(db_session, AlertBatch))[0].status == BatchStatus.SENT
        completed = [r for r in caplog.records if r.getMessage() == "Completed dispatch_ready_batches"]
        assert completed[0].extra_data["result"] == result

    @pytest.mark.integration
    async def test_dispatch_crash_is_contained(
        self, db_session, seller, buyer, subscription_factory, event_factory, fake_provider
    ) -> None:
        await subscription_factory(buyer, frequency=AlertFrequency.TWICE_DAILY)
        await AlertService(db_session).process_event(await event_factory(seller), NOW)
        batch = (await _all(db_session, AlertBatch))[0]
        batch.scheduled_for = utcnow() - timedelta(minutes=1)
        await db_session.commit()

        with _task_context(db_session), patch(
            "app.workers.tasks.BatchScheduler.dispatch", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            result = await tasks.dispatch_ready_batches()

        assert result == {"ready": 1, "sent": 0, "skipped": 1}

    @pytest.mark.integration
    async def test_recover_stale_batches(self, db_session, buyer, subscription_factory) -> None:
        subscription = await subscription_factory(buyer, frequency=AlertFrequency.MORNING_ONLY)
        db_session.add(AlertBatch(
            subscription_id=subscription.id,
            user_id=buyer.id,
            frequency=AlertFrequency.MORNING_ONLY,
            status=BatchStatus.PROCESSING,
            scheduled_for=utcnow() - timedelta(hours=1),
            processing_started_at=utcnow() - timedelta(hours=1),
            event_ids=[1],
            item_count=1,
        ))
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.recover_stale_batches()

        assert result == {"requeued": 1, "failed": 0}
        assert (await _all(db_session, AlertBatch))[0].status == BatchStatus.PENDING

    @pytest.mark.integration
    async def test_reschedule_dormant_batches(self, db_session, buyer, subscription_factory) -> None:
        subscription = await subscription_factory(buyer, frequency=AlertFrequency.MORNING_ONLY)
        db_session.add(AlertBatch(
            subscription_id=subscription.id,
            user_id=buyer.id,
            frequency=AlertFrequency.MORNING_ONLY,
            status=BatchStatus.PENDING,
            scheduled_for=utcnow() - timedelta(hours=1),
            event_ids=[],
            item_count=0,
        ))
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.reschedule_dormant_batches()

        assert result == {"rescheduled": 1}
        assert (await _all(db_session, AlertBatch))[0].scheduled_for > utcnow()


class TestMaintenanceTasks:
    @pytest.mark.integration
    async def test_reset_timed_out_sessions(self, db_session) -> None:
        manager = SessionManager(db_session)
        session = await manager.get_or_create("+919800000030")
        await manager.advance(session, FlowType.FISH_SUBSCRIBE.value, SubscribeStep.ASK_RADIUS.value)
        session.last_activity_at = utcnow() - timedelta(hours=1)
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.reset_timed_out_sessions()

        assert result == {"reset": 1}
        assert (await _all(db_session, ConversationSession))[0].current_step == "idle"

    @pytest.mark.integration
    async def test_expire_stale_events(self, db_session, seller, event_factory) -> None:
        await event_factory(seller, expires_at=utcnow() - timedelta(minutes=1))

        with _task_context(db_session):
            result = await tasks.expire_stale_events()

        assert result == {"expired": 1}
        assert (await _all(db_session, MarketEvent))[0].is_active is False

    @pytest.mark.integration
    async def test_cleanup_old_sessions(self, db_session) -> None:
        manager = SessionManager(db_session)
        old = await manager.get_or_create("+919800000031")
        await manager.get_or_create("+919800000032")
        old.last_activity_at = utcnow() - timedelta(days=30)
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.cleanup_old_sessions()

        assert result == {"deleted": 1}
        assert [s.phone for s in await _all(db_session, ConversationSession)] == ["+919800000032"]

    @pytest.mark.integration
    async def test_cleanup_old_alerts(self, db_session) -> None:
        with _task_context(db_session):
            result = await tasks.cleanup_old_alerts()

        assert result == {"alerts": 0, "batches": 0}

    @pytest.mark.integration
    async def test_cleanup_old_webhook_events(self, db_session, caplog) -> None:
        caplog.set_level(logging.INFO, logger="app.workers.tasks")
        old = utcnow() - timedelta(days=30)
        db_session.add_all([
            WebhookEvent(message_id="wamid.old", platform="whatsapp_cloud", status="completed", created_at=old),
            WebhookEvent(message_id="wamid.stuck", platform="whatsapp_cloud", status="processing", created_at=old),
            WebhookEvent(message_id="wamid.new", platform="whatsapp_cloud", status="completed", created_at=utcnow()),
        ])
        await db_session.commit()

        with _task_context(db_session):
            result = await tasks.cleanup_old_webhook_events()

        assert result == {"deleted": 1}
        remaining = sorted(event.message_id for event in await _all(db_session, WebhookEvent))
        assert remaining == ["wamid.new", "wamid.stuck"]
        completed = [r for r in caplog.records if r.getMessage() == "Completed cleanup_old_webhook_events"]
        assert completed[0].extra_data["result"] == {"deleted": 1}


class TestTaskSession:
    @pytest.mark.unit
    async def test_engine_is_pooled_and_disposed_on_error(self) -> None:
        from app.db import database

        engine = MagicMock()
        engine.dispose = AsyncMock()
        session = MagicMock()
        session.close = AsyncMock()
        maker = MagicMock()
        maker.return_value.__aenter__ = AsyncMock(return_value=session)
        maker.return_value.__aexit__ = AsyncMock(return_value=None)

        with patch.object(database, "create_async_engine", return_value=engine) as create, \
             patch.object(database, "async_sessionmaker", return_value=maker):
            with pytest.raises(RuntimeError):
                async with database.get_task_session() as db:
                    assert db is session
                    raise RuntimeError("task failed")

        assert create.call_args.kwargs["pool_size"] == 5
        assert create.call_args.kwargs["max_overflow"] == 10
        session.close.assert_awaited_once()
        engine.dispose.assert_awaited_once()


class TestEventLoop:
    @pytest.mark.unit
    def test_run_async_returns_result_and_closes_loop(self) -> None:
        captured = {}

        async def _work():
            captured["loop"] = asyncio.get_running_loop()
            return 42

        assert tasks.run_async(_work()) == 42
        assert captured["loop"].is_closed()

    @pytest.mark.unit
    def test_pending_tasks_are_cancelled(self) -> None:
        started = {}

        async def _forever():
            started["ok"] = True
            await asyncio.sleep(3600)

        async def _work():
            asyncio.get_running_loop().create_task(_forever())
            await asyncio.sleep(0)
            return "done"

        assert tasks.run_async(_work()) == "done"
        assert started["ok"] is True

    @pytest.mark.unit
    def test_providers_reset_after_task(self) -> None:
        async def _work():
            return None

        with patch("app.workers.tasks.reset_providers") as mock_reset:
            tasks.run_async(_work())

        mock_reset.assert_called_once()


class TestBeatSchedule:
    @pytest.mark.unit
    def test_every_scheduled_task_is_registered(self) -> None:
        from app.workers.celery_app import celery_app

        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert scheduled == {
            "app.workers.tasks.send_queued_alerts",
            "app.workers.tasks.dispatch_ready_batches",
            "app.workers.tasks.recover_stale_batches",
            "app.workers.tasks.reschedule_dormant_batches",
            "app.workers.tasks.reset_timed_out_sessions",
            "app.workers.tasks.expire_stale_events",
            "app.workers.tasks.cleanup_old_sessions",
            "app.workers.tasks.cleanup_old_alerts",
            "app.workers.tasks.cleanup_old_webhook_events",
        }
        for name in scheduled:
            assert name in celery_app.tasks


class TestTaskLogging:
    @pytest.fixture(autouse=True)
    def clean_context(self):
        correlation_id_var.set("")
        clear_log_context()
        yield
        correlation_id_var.set("")
        clear_log_context()

    @pytest.mark.unit
    def test_prerun_binds_task_and_correlation_id(self) -> None:
        from app.workers.celery_app import bind_task_logging

        bind_task_logging(task_id="0f3a9c12-aaaa-bbbb", task=tasks.send_queued_alerts)

        assert correlation_id_var.get() == "0f3a9c12"
        assert log_context_var.get() == {"task": "app.workers.tasks.send_queued_alerts"}

    @pytest.mark.unit
    def test_postrun_clears_context(self) -> None:
        from app.workers.celery_app import bind_task_logging, clear_task_logging

        bind_task_logging(task_id="0f3a9c12-aaaa-bbbb", task=tasks.send_queued_alerts)
        clear_task_logging()

        assert correlation_id_var.get() == ""
        assert log_context_var.get() == {}

    @pytest.mark.unit
    def test_run_async_keeps_task_correlation_id(self) -> None:
        correlation_id_var.set("task0001")

        async def _work():
            return correlation_id_var.get()

        assert tasks.run_async(_work()) == "task0001"
