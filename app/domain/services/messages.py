"""
Outbound message texts (WhatsApp formatting: *bold*, _italic_)
"""
from __future__ import annotations

from typing import Iterable

from app.core.config import settings
from app.core.geo import format_distance
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import AlertFrequency, Subscription

ALERT_REPLY_OPTIONS = ["I'm coming", "Message seller", "Location"]

MAIN_MENU_OPTIONS = [
    "1. 🔔 Fish alerts",
    "2. ⚙️ Manage alerts",
    "3. 🎣 Post today's catch",
]


def _event_line(event: MarketEvent, distance_km: float | None = None) -> str:
    parts = [f"🐟 *{event.title}*"]
    if event.price_per_kg is not None:
        parts.append(f"₹{event.price_per_kg:g}/kg")
    if distance_km is not None:
        parts.append(format_distance(distance_km))
    return " · ".join(parts)


def alert_text(event: MarketEvent, distance_km: float | None) -> str:
    lines = [
        "🔔 *Fresh fish near you!*",
        "",
        _event_line(event, distance_km),
    ]
    if event.location_label:
        lines.append(f"📍 {event.location_label}")
    if event.description:
        lines.append("")
        lines.append(event.description)
    lines.append("")
    lines.append("Reply to let the seller know you're coming.")
    return "\n".join(lines)


def digest_text(
    subscription: Subscription,
    events: Iterable[tuple[MarketEvent, float | None]],
) -> str:
    events = list(events)
    header = {
        AlertFrequency.MORNING_ONLY: "🌅 *Your morning fish digest*",
        AlertFrequency.TWICE_DAILY: "🐟 *Your fish digest*",
        AlertFrequency.WEEKLY_DIGEST: "📅 *Your weekly fish digest*",
    }.get(subscription.alert_frequency, "🐟 *Your fish digest*")

    lines = [header, "", f"{len(events)} new catch(es) within {subscription.radius_km} km:", ""]
    for index, (event, distance_km) in enumerate(events, 1):
        lines.append(f"{index}. {_event_line(event, distance_km)}")
        if event.location_label:
            lines.append(f"   📍 {event.location_label}")
    lines.append("")
    lines.append("Reply *menu* to manage your alerts.")
    return "\n".join(lines)


def main_menu_text(name: str | None = None, is_seller: bool = False) -> str:
    greeting = f"👋 Hi {name}!" if name else "👋 Welcome to NearBuy!"
    options = MAIN_MENU_OPTIONS if is_seller else MAIN_MENU_OPTIONS[:2]
    return "\n".join([greeting, "", "What would you like to do?", "", *options])


def help_text() -> str:
    lines = [
        "ℹ️ *Help*",
        "",
        "• *menu* - back to the main menu",
        "• *cancel* - stop what you're doing",
        "• *restart* - start the current step over",
    ]
    if settings.SUPPORT_PHONE:
        lines.append("")
        lines.append(f"Need a person? Message {settings.SUPPORT_PHONE}")
    return "\n".join(lines)


def cancelled_text() -> str:
    return "❌ Cancelled."


def frequency_menu_text() -> str:
    lines = ["⏰ *How often should we alert you?*", ""]
    lines.extend(f"{index}. {frequency.label}" for index, frequency in enumerate(AlertFrequency, 1))
    return "\n".join(lines)


def radius_menu_text() -> str:
    options = ", ".join(str(km) for km in settings.radius_options_km)
    return f"📏 *How far are you willing to go?*\n\nReply with a distance in km: {options}"


def subscription_summary(subscription: Subscription) -> str:
    types = "All fish" if subscription.all_types else ", ".join(str(t) for t in subscription.type_ids or [])
    status = "⏸️ Paused" if subscription.is_paused else "✅ Active"
    lines = [
        f"*{subscription.name or 'Fish alerts'}* ({status})",
        f"📍 {subscription.location_label or f'{subscription.latitude:.4f}, {subscription.longitude:.4f}'}",
        f"📏 {subscription.radius_km} km",
        f"🐟 {types}",
        f"⏰ {subscription.alert_frequency.label}",
        f"📊 {subscription.alerts_received} alerts, {subscription.click_rate}% clicked",
    ]
    return "\n".join(lines)
