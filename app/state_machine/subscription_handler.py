"""
Fish alert flows: subscribing, and managing existing subscriptions
"""
from __future__ import annotations

from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.core.validation import LocationValidator
from app.db.models.conversation_session import ConversationSession
from app.db.models.subscription import AlertFrequency, Subscription
from app.domain.services import messages
from app.domain.services.subscription_service import SubscriptionService
from app.state_machine.handlers import (
    FlowHandler,
    IncomingMessage,
    MessageResponse,
    StepResult,
    is_no,
    is_yes,
)
from app.state_machine.scratch import ManageSubscriptionScratch, SubscribeScratch
from app.state_machine.states import FlowType, ManageSubscriptionStep, SubscribeStep

logger = get_logger(__name__)

_FREQUENCIES = list(AlertFrequency)
_MAX_PAUSE_DAYS = 30


def parse_frequency_choice(text: str) -> AlertFrequency | None:
    """'1'-'4' or a frequency value."""
    text = text.strip().lower()
    if text.isdigit() and 1 <= int(text) <= len(_FREQUENCIES):
        return _FREQUENCIES[int(text) - 1]
    try:
        return AlertFrequency(text)
    except ValueError:
        return None


def parse_type_ids(text: str) -> list[int] | None:
    """'all' -> [], '3, 7' -> [3, 7], anything else -> None."""
    text = text.strip().lower()
    if text in {"all", "any", "*"}:
        return []
    parts = [part.strip() for part in text.split(",") if part.strip()]
    if not parts or not all(part.isdigit() for part in parts):
        return None
    return sorted({int(part) for part in parts})


class SubscribeHandler(FlowHandler):
    """location -> radius -> types -> frequency -> confirm"""

    flow = FlowType.FISH_SUBSCRIBE

    def _handlers(self):
        return {
            SubscribeStep.ASK_LOCATION.value: self._handle_location,
            SubscribeStep.ASK_RADIUS.value: self._handle_radius,
            SubscribeStep.ASK_TYPES.value: self._handle_types,
            SubscribeStep.ASK_FREQUENCY.value: self._handle_frequency,
            SubscribeStep.CONFIRM.value: self._handle_confirm,
        }

    async def first_prompt(self, session: ConversationSession) -> MessageResponse:
        return MessageResponse(
            "🔔 *Fish alerts*\n\n"
            "📍 Where should we look for fish?\n"
            "Share your location (📎 → Location), or type it as _lat,lng_."
        )

    async def _handle_location(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        if message.has_location:
            coords = (message.latitude, message.longitude)
        else:
            coords = LocationValidator.parse(message.content)

        if coords is None or not LocationValidator.is_valid(*coords):
            response = MessageResponse(
                "I couldn't read that location. Share it with 📎 → Location, or type e.g. _9.9312,76.2673_."
            )
            return response, SubscribeStep.ASK_LOCATION.value, {}

        latitude, longitude = coords
        return (
            MessageResponse(messages.radius_menu_text(), keyboard=[str(km) for km in settings.radius_options_km]),
            SubscribeStep.ASK_RADIUS.value,
            {"latitude": latitude, "longitude": longitude, "location_label": message.location_name},
        )

    async def _handle_radius(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        text = message.content.lower().removesuffix("km").strip()
        if not text.isdigit() or int(text) not in settings.radius_options_km:
            return MessageResponse(messages.radius_menu_text()), SubscribeStep.ASK_RADIUS.value, {}

        response = MessageResponse(
            "🐟 *Which fish?*\n\n"
            "Reply *all*, or the fish type numbers separated by commas (e.g. _3,7_)."
        )
        return response, SubscribeStep.ASK_TYPES.value, {"radius_km": int(text)}

    async def _handle_types(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        type_ids = parse_type_ids(message.content)
        if type_ids is None:
            response = MessageResponse("Please reply *all* or numbers like _3,7_.")
            return response, SubscribeStep.ASK_TYPES.value, {}

        return (
            MessageResponse(messages.frequency_menu_text()),
            SubscribeStep.ASK_FREQUENCY.value,
            {"all_types": not type_ids, "type_ids": type_ids},
        )

    async def _handle_frequency(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        frequency = parse_frequency_choice(message.content)
        if frequency is None:
            return MessageResponse(messages.frequency_menu_text()), SubscribeStep.ASK_FREQUENCY.value, {}

        scratch = self.sessions.get_typed_scratch(session, SubscribeScratch)
        types = "All fish" if scratch.all_types else ", ".join(str(t) for t in scratch.type_ids)
        response = MessageResponse(
            "📋 *Please confirm*\n\n"
            f"📏 Within {scratch.radius_km} km\n"
            f"🐟 {types}\n"
            f"⏰ {frequency.label}\n\n"
            "Save these alerts? (yes/no)",
            keyboard=["Yes", "No"],
        )
        return response, SubscribeStep.CONFIRM.value, {"frequency": frequency.value}

    async def _handle_confirm(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        if is_no(message.content):
            return MessageResponse("Okay, nothing was saved.\n\n" + messages.main_menu_text(self.user.name)), None, {}
        if not is_yes(message.content):
            return MessageResponse("Please reply *yes* or *no*."), SubscribeStep.CONFIRM.value, {}

        scratch = self.sessions.get_typed_scratch(session, SubscribeScratch)
        if scratch.latitude is None or scratch.longitude is None or scratch.radius_km is None:
            # scratch lost (expired or corrupt); ask again from the top
            response = await self.start(session)
            return response, session.current_step, {}

        try:
            subscription = await SubscriptionService(self.db).create_subscription(
                self.user.id,
                scratch.latitude,
                scratch.longitude,
                radius_km=scratch.radius_km,
                type_ids=scratch.type_ids,
                alert_frequency=scratch.frequency or AlertFrequency.IMMEDIATE,
                location_label=scratch.location_label,
            )
        except AppException as exc:
            logger.warning(
                "Subscription rejected",
                extra_data={"user_id": self.user.id, "error": exc.message},
            )
            return MessageResponse(f"❌ {exc.message}\n\n" + messages.main_menu_text(self.user.name)), None, {}

        response = MessageResponse(
            "✅ *You're subscribed!*\n\n"
            + messages.subscription_summary(subscription)
            + "\n\nReply *menu* any time to manage your alerts."
        )
        return response, None, {}


class ManageSubscriptionHandler(FlowHandler):
    """Status screen with pause / resume / frequency / delete"""

    flow = FlowType.FISH_MANAGE_SUBSCRIPTION

    _ACTIONS = ["Pause", "Resume", "Change frequency", "Delete", "Next alert"]

    def _handlers(self):
        return {
            ManageSubscriptionStep.SHOW_STATUS.value: self._handle_status,
            ManageSubscriptionStep.ASK_PAUSE_DAYS.value: self._handle_pause_days,
            ManageSubscriptionStep.ASK_FREQUENCY.value: self._handle_frequency,
            ManageSubscriptionStep.CONFIRM_DELETE.value: self._handle_confirm_delete,
        }

    @property
    def service(self) -> SubscriptionService:
        return SubscriptionService(self.db)

    async def _subscriptions(self) -> list[Subscription]:
        return await self.service.get_user_subscriptions(self.user.id)

    async def _selected(self, session: ConversationSession) -> Subscription | None:
        subscriptions = await self._subscriptions()
        if not subscriptions:
            return None
        selected_id = self.sessions.get_typed_scratch(session, ManageSubscriptionScratch).subscription_id
        for subscription in subscriptions:
            if subscription.id == selected_id:
                return subscription
        return subscriptions[0]

    def _status_response(self, subscription: Subscription, count: int, prefix: str = "") -> MessageResponse:
        actions = self._ACTIONS if count > 1 else self._ACTIONS[:-1]
        lines = [prefix, ""] if prefix else []
        lines.append(messages.subscription_summary(subscription))
        lines.append("")
        lines.extend(f"{index}. {action}" for index, action in enumerate(actions, 1))
        lines.append("0. Main menu")
        return MessageResponse("\n".join(lines))

    async def first_prompt(self, session: ConversationSession) -> MessageResponse:
        subscriptions = await self._subscriptions()
        if not subscriptions:
            await self.finish(session)
            return MessageResponse(
                "You don't have any fish alerts yet.\n\n" + messages.main_menu_text(self.user.name)
            )
        await self.sessions.merge_scratch(session, {"subscription_id": subscriptions[0].id})
        return self._status_response(subscriptions[0], len(subscriptions))

    async def _handle_status(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        subscription = await self._selected(session)
        if subscription is None:
            return MessageResponse("Your alerts are gone.\n\n" + messages.main_menu_text(self.user.name)), None, {}

        count = len(await self._subscriptions())
        choice = message.content.lower()

        if choice in {"1", "pause"}:
            response = MessageResponse(f"⏸️ Pause for how many days? (1-{_MAX_PAUSE_DAYS}, or *forever*)")
            return response, ManageSubscriptionStep.ASK_PAUSE_DAYS.value, {}

        if choice in {"2", "resume"}:
            await self.service.resume(subscription.id)
            return self._status_response(subscription, count, "▶️ Alerts resumed."), ManageSubscriptionStep.SHOW_STATUS.value, {}

        if choice in {"3", "frequency", "change frequency"}:
            return MessageResponse(messages.frequency_menu_text()), ManageSubscriptionStep.ASK_FREQUENCY.value, {}

        if choice in {"4", "delete"}:
            response = MessageResponse("🗑️ Delete these alerts? (yes/no)", keyboard=["Yes", "No"])
            return response, ManageSubscriptionStep.CONFIRM_DELETE.value, {}

        if choice in {"5", "next", "next alert"} and count > 1:
            subscriptions = await self._subscriptions()
            index = next(i for i, sub in enumerate(subscriptions) if sub.id == subscription.id)
            following = subscriptions[(index + 1) % count]
            return (
                self._status_response(following, count),
                ManageSubscriptionStep.SHOW_STATUS.value,
                {"subscription_id": following.id},
            )

        return self._status_response(subscription, count), ManageSubscriptionStep.SHOW_STATUS.value, {}

    async def _handle_pause_days(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        subscription = await self._selected(session)
        if subscription is None:
            return MessageResponse(messages.main_menu_text(self.user.name)), None, {}

        text = message.content.lower()
        if text in {"forever", "always", "indefinitely"}:
            await self.service.pause(subscription.id)
            note = "⏸️ Alerts paused until you resume them."
        elif text.isdigit() and 1 <= int(text) <= _MAX_PAUSE_DAYS:
            await self.service.pause(subscription.id, days=int(text))
            note = f"⏸️ Alerts paused for {int(text)} day(s)."
        else:
            response = MessageResponse(f"Please reply a number from 1 to {_MAX_PAUSE_DAYS}, or *forever*.")
            return response, ManageSubscriptionStep.ASK_PAUSE_DAYS.value, {}

        count = len(await self._subscriptions())
        return self._status_response(subscription, count, note), ManageSubscriptionStep.SHOW_STATUS.value, {}

    async def _handle_frequency(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        subscription = await self._selected(session)
        if subscription is None:
            return MessageResponse(messages.main_menu_text(self.user.name)), None, {}

        frequency = parse_frequency_choice(message.content)
        if frequency is None:
            return MessageResponse(messages.frequency_menu_text()), ManageSubscriptionStep.ASK_FREQUENCY.value, {}

        await self.service.set_frequency(subscription.id, frequency)
        count = len(await self._subscriptions())
        note = f"⏰ You'll now get alerts: {frequency.label}."
        return self._status_response(subscription, count, note), ManageSubscriptionStep.SHOW_STATUS.value, {}

    async def _handle_confirm_delete(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        subscription = await self._selected(session)
        if subscription is None or is_no(message.content):
            if subscription is None:
                return MessageResponse(messages.main_menu_text(self.user.name)), None, {}
            count = len(await self._subscriptions())
            return self._status_response(subscription, count), ManageSubscriptionStep.SHOW_STATUS.value, {}
        if not is_yes(message.content):
            return MessageResponse("Please reply *yes* or *no*."), ManageSubscriptionStep.CONFIRM_DELETE.value, {}

        await self.service.delete(subscription.id)
        return MessageResponse("🗑️ Alerts deleted.\n\n" + messages.main_menu_text(self.user.name)), None, {}
