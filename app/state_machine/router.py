"""
Message Router - one inbound message, one session transaction

route() locks the sender's session row, applies timeout and keyword
interception, dispatches to the flow handler and commits once.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.alert import ClickAction
from app.db.models.conversation_session import ConversationSession
from app.db.models.market_event import MarketEvent
from app.db.models.user import Capability, User
from app.domain.services import messages
from app.domain.services.alert_service import AlertService
from app.domain.services.user_service import UserService
from app.domain.services.whatsapp.wa_me_links import generate_chat_link, generate_maps_link
from app.state_machine.catch_handler import PostCatchHandler
from app.state_machine.handlers import FlowHandler, IncomingMessage, MessageResponse
from app.state_machine.manager import SessionManager
from app.state_machine.states import FlowType, Intent
from app.state_machine.subscription_handler import ManageSubscriptionHandler, SubscribeHandler

logger = get_logger(__name__)

FLOW_HANDLERS: dict[str, type[FlowHandler]] = {
    FlowType.FISH_SUBSCRIBE.value: SubscribeHandler,
    FlowType.FISH_MANAGE_SUBSCRIPTION.value: ManageSubscriptionHandler,
    FlowType.FISH_POST_CATCH.value: PostCatchHandler,
}

# Main menu choices -> flow
_MENU_CHOICES = {
    "1": FlowType.FISH_SUBSCRIBE,
    "alerts": FlowType.FISH_SUBSCRIBE,
    "subscribe": FlowType.FISH_SUBSCRIBE,
    "2": FlowType.FISH_MANAGE_SUBSCRIPTION,
    "manage": FlowType.FISH_MANAGE_SUBSCRIPTION,
    "my alerts": FlowType.FISH_MANAGE_SUBSCRIPTION,
    "3": FlowType.FISH_POST_CATCH,
    "post": FlowType.FISH_POST_CATCH,
    "sell": FlowType.FISH_POST_CATCH,
}

# Reply buttons on an alert -> click action
_ALERT_REPLIES = {
    label.lower(): action
    for label, action in zip(
        messages.ALERT_REPLY_OPTIONS,
        (ClickAction.COMING, ClickAction.MESSAGE, ClickAction.LOCATION),
    )
}


class MessageRouter:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.sessions = SessionManager(db)

    async def route(self, message: IncomingMessage, now: datetime | None = None) -> Optional[MessageResponse]:
        """
        Handle one inbound message. Returns None for a redelivered message id.
        """
        session = await self.sessions.get_or_create(message.phone, for_update=True)
        if self.sessions.is_duplicate_message(session, message.message_id):
            logger.info(
                "Duplicate message ignored",
                extra_data={
                    "phone": PhoneNumberValidator.mask(message.phone),
                    "message_id": message.message_id,
                },
            )
            await self.db.rollback()
            return None

        await self.sessions.expire_if_stale(session, now)
        await self.sessions.record_message(session, message.message_id, message.type)

        user, _ = await UserService(self.db).get_or_create(message.phone, message.profile_name)
        if session.user_id != user.id:
            await self.sessions.link_user(session, user.id)

        response = await self._intercept_keyword(session, user, message)
        if response is None:
            response = await self._dispatch(session, user, message)

        await self.db.commit()
        logger.debug(
            "Message routed",
            extra_data={
                "phone": PhoneNumberValidator.mask(message.phone),
                "flow": session.current_flow,
                "step": session.current_step,
            },
        )
        return response

    def _handler_for(self, flow: str, user: User) -> FlowHandler | None:
        handler_cls = FLOW_HANDLERS.get(flow)
        return handler_cls(self.db, self.sessions, user) if handler_cls else None

    def _menu(self, user: User, prefix: str | None = None) -> MessageResponse:
        text = messages.main_menu_text(user.name, user.has_capability(Capability.FISH_SELLER))
        return MessageResponse(f"{prefix}\n\n{text}" if prefix else text)

    async def _intercept_keyword(
        self,
        session: ConversationSession,
        user: User,
        message: IncomingMessage,
    ) -> Optional[MessageResponse]:
        if message.type not in ("text", "interactive"):
            return None

        intent = self.sessions.detect_intent(message.content)
        if intent == Intent.NONE:
            return None

        if intent == Intent.MENU:
            await self.sessions.reset(session)
            return self._menu(user)

        if intent == Intent.HELP:
            return MessageResponse(messages.help_text())

        if intent == Intent.CANCEL:
            if self.sessions.is_idle(session):
                return None
            await self.sessions.reset(session)
            return self._menu(user, messages.cancelled_text())

        # RESTART
        handler = None if self.sessions.is_idle(session) else self._handler_for(session.current_flow, user)
        if handler is None or not await self.sessions.restart_flow(session):
            await self.sessions.reset(session)
            return self._menu(user)
        return await handler.start(session)

    async def _dispatch(
        self,
        session: ConversationSession,
        user: User,
        message: IncomingMessage,
    ) -> MessageResponse:
        if self.sessions.is_idle(session):
            return await self._handle_main_menu(session, user, message)

        handler = self._handler_for(session.current_flow, user)
        if handler is None:
            logger.warning(
                "No handler for flow, resetting",
                extra_data={
                    "phone": PhoneNumberValidator.mask(session.phone),
                    "flow": session.current_flow,
                },
            )
            await self.sessions.reset(session)
            return self._menu(user)
        return await handler.handle(session, message)

    async def _handle_main_menu(
        self,
        session: ConversationSession,
        user: User,
        message: IncomingMessage,
    ) -> MessageResponse:
        choice = message.content.lower()

        action = _ALERT_REPLIES.get(choice)
        if action is not None:
            return await self._handle_alert_reply(user, action)

        flow = _MENU_CHOICES.get(choice)
        if flow is None:
            return self._menu(user)

        if flow == FlowType.FISH_POST_CATCH and not user.has_capability(Capability.FISH_SELLER):
            return self._menu(user, "🎣 Only registered fish sellers can post catches.")

        return await self._handler_for(flow.value, user).start(session)

    async def _handle_alert_reply(self, user: User, action: ClickAction) -> MessageResponse:
        alert_service = AlertService(self.db)
        alert = await alert_service.find_latest_for_user(user.id)
        if alert is None:
            return self._menu(user)

        await alert_service.record_click(alert, action)
        event = await self.db.get(MarketEvent, alert.event_id)

        if action == ClickAction.LOCATION and event is not None:
            return MessageResponse(
                f"📍 {event.location_label or event.title}\n"
                f"{generate_maps_link(event.latitude, event.longitude)}"
            )
        if action == ClickAction.MESSAGE and event is not None:
            seller = await self.db.get(User, event.source_id)
            if seller is not None:
                link = generate_chat_link(seller.phone, f"Hi, is the {event.title} still available?")
                return MessageResponse(f"💬 Message the seller: {link}")
        return MessageResponse("👍 Great, the seller will expect you!")
