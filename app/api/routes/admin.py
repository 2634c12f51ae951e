"""
Admin Endpoints - delivery statistics and circuit breaker status (X-Admin-API-Key)
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import CircuitBreaker, get_whatsapp_cloud_circuit_breaker
from app.db.database import get_db
from app.domain.services.alert_service import AlertService
from app.domain.services.delivery_log_service import DeliveryLogService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class DeliveryStatsResponse(BaseModel):
    period_hours: int
    total: int
    sent: int
    failed: int
    success_rate: float = Field(description="Percentage of attempts that were sent")
    by_status: dict[str, int]
    by_error_type: dict[str, int]
    by_notification_type: dict[str, int]


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int = Field(description="Consecutive failures so far")
    retry_after_seconds: float
    times_opened: int
    last_opened_at: Optional[str] = None
    last_error: Optional[str] = Field(None, description="Type and message of the last counted failure")


@router.get("/delivery-stats", response_model=DeliveryStatsResponse)
async def delivery_stats(
    hours: int = Query(24, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Send success rate and failures per error type for the last ``hours``."""
    return await DeliveryLogService(db).get_stats(hours=hours)


@router.get("/events/{event_id}/alert-stats")
async def event_alert_stats(event_id: int, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await AlertService(db).get_event_stats(event_id)


@router.get("/circuit-breakers", response_model=list[CircuitBreakerStatusResponse])
async def circuit_breakers() -> list[dict[str, Any]]:
    # make sure the WhatsApp breaker is listed even before its first use
    get_whatsapp_cloud_circuit_breaker()
    return [breaker.snapshot() for breaker in CircuitBreaker.all_instances()]
