"""
Domain events for alert delivery side effects.

Services publish an event after a state change; subscribed handlers run in
the same database transaction. Counters on subscriptions and market events
are maintained this way instead of from inside the models.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AlertSent:
    alert_id: int
    subscription_id: int
    event_id: int
    sent_at: datetime


@dataclass(frozen=True)
class AlertClicked:
    alert_id: int
    subscription_id: int
    event_id: int
    action: str


@dataclass(frozen=True)
class BatchSent:
    batch_id: int
    subscription_id: int
    sent_at: datetime
    event_ids: tuple[int, ...] = field(default_factory=tuple)


DomainEvent = AlertSent | AlertClicked | BatchSent
Handler = Callable[[AsyncSession, DomainEvent], Awaitable[None]]


class DomainEventBus:
    """Synchronous in-transaction dispatcher keyed by event class"""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    async def publish(self, db: AsyncSession, event: DomainEvent) -> None:
        handlers = self._handlers.get(type(event), [])
        logger.debug(
            "Publishing domain event",
            extra_data={"event": type(event).__name__, "handlers": len(handlers)},
        )
        for handler in handlers:
            await handler(db, event)


_bus: DomainEventBus | None = None
_lock = threading.Lock()


def get_event_bus() -> DomainEventBus:
    """Process-wide bus with the counter handlers registered."""
    global _bus
    if _bus is None:
        with _lock:
            if _bus is None:
                from app.domain.services.counter_handlers import register_counter_handlers

                bus = DomainEventBus()
                register_counter_handlers(bus)
                _bus = bus
    return _bus


def reset_event_bus() -> None:
    """For tests."""
    global _bus
    with _lock:
        _bus = None
