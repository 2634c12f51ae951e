"""
Celery Application Configuration

Worker processes log JSON with the same formatter as the web app; every task
run gets its own correlation id (derived from the task id) and the task name
bound into the log context.
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import task_postrun, task_prerun, worker_process_init

from app.core.config import settings
from app.core.logging import (
    bind_log_context,
    clear_log_context,
    correlation_id_var,
    get_logger,
    set_correlation_id,
    setup_logging,
)

logger = get_logger(__name__)

celery_app = Celery(
    "nearbuy_bot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.OPERATIONAL_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "send-queued-alerts-every-10-seconds": {
        "task": "app.workers.tasks.send_queued_alerts",
        "schedule": 10.0,
    },
    "dispatch-ready-batches-every-minute": {
        "task": "app.workers.tasks.dispatch_ready_batches",
        "schedule": 60.0,
    },
    "recover-stale-batches-every-5-minutes": {
        "task": "app.workers.tasks.recover_stale_batches",
        "schedule": 300.0,
    },
    "reset-timed-out-sessions-every-5-minutes": {
        "task": "app.workers.tasks.reset_timed_out_sessions",
        "schedule": 300.0,
    },
    "expire-stale-events-every-10-minutes": {
        "task": "app.workers.tasks.expire_stale_events",
        "schedule": 600.0,
    },
    "reschedule-dormant-batches-hourly": {
        "task": "app.workers.tasks.reschedule_dormant_batches",
        "schedule": 3600.0,
    },
    # Daily cleanups run in the quiet early morning (operational timezone)
    "cleanup-old-sessions-daily": {
        "task": "app.workers.tasks.cleanup_old_sessions",
        "schedule": crontab(hour="3", minute="0"),
    },
    "cleanup-old-alerts-daily": {
        "task": "app.workers.tasks.cleanup_old_alerts",
        "schedule": crontab(hour="3", minute="15"),
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": crontab(hour="3", minute="30"),
    },
}


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME} worker",
    )
    logger.info("Celery worker process started")


@task_prerun.connect
def bind_task_logging(task_id=None, task=None, **kwargs):
    set_correlation_id(task_id[:8] if task_id else None)
    bind_log_context(task=task.name if task is not None else None)


@task_postrun.connect
def clear_task_logging(**kwargs):
    correlation_id_var.set("")
    clear_log_context()
