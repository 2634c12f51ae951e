"""
Counter handlers for alert domain events.

Every increment is a single UPDATE ... SET col = col + n so concurrent
workers never lose counts.
"""
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.alert import ClickAction
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import Subscription
from app.domain.events import AlertClicked, AlertSent, BatchSent, DomainEventBus


async def on_alert_sent(db: AsyncSession, event: AlertSent) -> None:
    await db.execute(
        update(Subscription)
        .where(Subscription.id == event.subscription_id)
        .values(
            alerts_received=Subscription.alerts_received + 1,
            last_alert_at=event.sent_at,
        )
    )
    await db.execute(
        update(MarketEvent)
        .where(MarketEvent.id == event.event_id)
        .values(alerts_sent=MarketEvent.alerts_sent + 1)
    )


async def on_alert_clicked(db: AsyncSession, event: AlertClicked) -> None:
    await db.execute(
        update(Subscription)
        .where(Subscription.id == event.subscription_id)
        .values(alerts_clicked=Subscription.alerts_clicked + 1)
    )
    if event.action == ClickAction.COMING.value:
        await db.execute(
            update(MarketEvent)
            .where(MarketEvent.id == event.event_id)
            .values(customers_coming=MarketEvent.customers_coming + 1)
        )
    elif event.action == ClickAction.MESSAGE.value:
        await db.execute(
            update(MarketEvent)
            .where(MarketEvent.id == event.event_id)
            .values(messages_received=MarketEvent.messages_received + 1)
        )


async def on_batch_sent(db: AsyncSession, event: BatchSent) -> None:
    if not event.event_ids:
        return
    await db.execute(
        update(Subscription)
        .where(Subscription.id == event.subscription_id)
        .values(
            alerts_received=Subscription.alerts_received + len(event.event_ids),
            last_alert_at=event.sent_at,
        )
    )
    await db.execute(
        update(MarketEvent)
        .where(MarketEvent.id.in_(event.event_ids))
        .values(alerts_sent=MarketEvent.alerts_sent + 1)
    )


def register_counter_handlers(bus: DomainEventBus) -> None:
    bus.subscribe(AlertSent, on_alert_sent)
    bus.subscribe(AlertClicked, on_alert_clicked)
    bus.subscribe(BatchSent, on_batch_sent)
