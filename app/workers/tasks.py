"""
Celery Tasks

Periodic workers for the alert pipeline: immediate alert sending, digest
dispatch, stale batch recovery and the retention sweeps. Every task opens its
own session with get_task_session() and runs on a fresh event loop.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import delete as sa_delete

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import correlation_id_var, get_logger, set_correlation_id, log_async_operation
from app.core.timeutils import utcnow
from app.db.database import get_task_session
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.alert_service import AlertService
from app.domain.services.batch_service import BatchScheduler
from app.domain.services.market_event_service import MarketEventService
from app.domain.services.whatsapp import reset_providers
from app.state_machine.manager import SessionManager

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        # the provider's HTTP client is bound to this loop
        reset_providers()
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # task_prerun sets one per task run; direct calls get a fresh id
    if not correlation_id_var.get():
        set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.send_queued_alerts")
def send_queued_alerts(limit: int | None = None):
    """Send immediate alerts waiting in the queued state."""

    @log_async_operation("send_queued_alerts")
    async def _send():
        async with get_task_session() as db:
            return await AlertService(db).send_queued_alerts(
                limit=limit or settings.QUEUED_ALERTS_BATCH_SIZE
            )

    return run_async(_send())


@celery_app.task(name="app.workers.tasks.dispatch_ready_batches")
def dispatch_ready_batches(limit: int = 100):
    """
    Send every pending batch whose scheduled time has passed.

    Each batch is claimed with a compare-and-swap, so overlapping runs never
    send the same digest twice.
    """

    @log_async_operation("dispatch_ready_batches")
    async def _dispatch():
        async with get_task_session() as db:
            scheduler = BatchScheduler(db)
            batch_ids = [batch.id for batch in await scheduler.ready_to_send(limit=limit)]

            sent = 0
            skipped = 0
            for batch_id in batch_ids:
                try:
                    if await scheduler.dispatch(batch_id):
                        sent += 1
                    else:
                        skipped += 1
                except Exception as e:
                    await db.rollback()
                    skipped += 1
                    logger.error(
                        "Batch dispatch crashed",
                        extra_data={"batch_id": batch_id, "error": str(e)},
                        exc_info=True,
                    )

            return {"ready": len(batch_ids), "sent": sent, "skipped": skipped}

    return run_async(_dispatch())


@celery_app.task(name="app.workers.tasks.recover_stale_batches")
def recover_stale_batches():
    """Requeue or fail batches stuck in processing past the grace period."""

    @log_async_operation("recover_stale_batches")
    async def _recover():
        async with get_task_session() as db:
            result = await BatchScheduler(db).recover_stale_processing()
            await db.commit()
            return result

    return run_async(_recover())


@celery_app.task(name="app.workers.tasks.reschedule_dormant_batches")
def reschedule_dormant_batches():
    @log_async_operation("reschedule_dormant_batches")
    async def _reschedule():
        async with get_task_session() as db:
            count = await BatchScheduler(db).reschedule_dormant()
            await db.commit()
            return {"rescheduled": count}

    return run_async(_reschedule())


@celery_app.task(name="app.workers.tasks.reset_timed_out_sessions")
def reset_timed_out_sessions():
    """Return abandoned conversations to the idle menu."""

    @log_async_operation("reset_timed_out_sessions")
    async def _reset():
        async with get_task_session() as db:
            count = await SessionManager(db).reset_timed_out_sessions()
            await db.commit()
            return {"reset": count}

    return run_async(_reset())


@celery_app.task(name="app.workers.tasks.expire_stale_events")
def expire_stale_events():
    @log_async_operation("expire_stale_events")
    async def _expire():
        async with get_task_session() as db:
            count = await MarketEventService(db).expire_stale_events()
            await db.commit()
            return {"expired": count}

    return run_async(_expire())


@celery_app.task(name="app.workers.tasks.cleanup_old_sessions")
def cleanup_old_sessions(days: int | None = None):
    @log_async_operation("cleanup_old_sessions")
    async def _cleanup():
        async with get_task_session() as db:
            deleted = await SessionManager(db).cleanup_old_sessions(days=days)
            await db.commit()
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_alerts")
def cleanup_old_alerts(days: int | None = None):
    """Delete alerts (and their orphaned batches) past the retention window."""

    @log_async_operation("cleanup_old_alerts")
    async def _cleanup():
        async with get_task_session() as db:
            result = await AlertService(db).cleanup_old_alerts(days=days)
            await db.commit()
            return result

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int | None = None):
    """Trim completed rows from the webhook_events idempotency table."""
    days = days or settings.WEBHOOK_EVENT_RETENTION_DAYS

    @log_async_operation("cleanup_old_webhook_events")
    async def _cleanup():
        async with get_task_session() as db:
            cutoff = utcnow() - timedelta(days=days)

            result = await db.execute(
                sa_delete(WebhookEvent).where(
                    WebhookEvent.status == "completed",
                    WebhookEvent.created_at < cutoff,
                )
            )
            deleted = result.rowcount

            await db.commit()
            return {"deleted": deleted}

    return run_async(_cleanup())
