"""
Health checks for the readiness probe (DB, Celery broker, WhatsApp circuit).

- liveness: the process answers (no dependency checks)
- readiness: every external dependency is reachable
"""
import asyncio
from typing import Any

from sqlalchemy import text

from app.core.circuit_breaker import CircuitState, get_whatsapp_cloud_circuit_breaker
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitized errors, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_WHATSAPP_CIRCUIT_OPEN = "error: whatsapp_circuit_open"

_BROKER_TIMEOUT_SECONDS = 5.0


async def _check_db() -> str:
    """SELECT 1 against the database."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


def _ping_broker() -> None:
    from app.workers.celery_app import celery_app

    with celery_app.connection_for_write() as conn:
        conn.ensure_connection(max_retries=1, timeout=_BROKER_TIMEOUT_SECONDS)


async def _check_celery() -> str:
    """Connect to the Celery broker through the app's own transport."""
    try:
        await asyncio.wait_for(asyncio.to_thread(_ping_broker), timeout=_BROKER_TIMEOUT_SECONDS * 2)
        return _CHECK_OK
    except Exception as e:
        logger.warning("Celery health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _check_whatsapp_circuit() -> str:
    breaker = get_whatsapp_cloud_circuit_breaker()
    if breaker.state == CircuitState.OPEN:
        return _ERROR_WHATSAPP_CIRCUIT_OPEN
    return _CHECK_OK


async def check_readiness() -> dict[str, Any]:
    """
    {"status": "healthy" | "degraded", "db": ..., "celery": ..., "whatsapp": ...}
    Each check is "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "celery": await _check_celery(),
        "whatsapp": _check_whatsapp_circuit(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
