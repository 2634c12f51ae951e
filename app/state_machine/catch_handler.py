"""
Fish catch posting flow (sellers only)
"""
from __future__ import annotations

import re

from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.core.validation import LocationValidator
from app.db.models.conversation_session import ConversationSession
from app.domain.services import messages
from app.domain.services.alert_service import AlertService
from app.domain.services.market_event_service import MarketEventService
from app.state_machine.handlers import (
    FlowHandler,
    IncomingMessage,
    MessageResponse,
    StepResult,
    is_no,
    is_yes,
)
from app.state_machine.scratch import PostCatchScratch
from app.state_machine.states import FlowType, PostCatchStep

logger = get_logger(__name__)

# "12 Sardine, 180" -> type id 12, name Sardine, 180/kg. Id and price are optional.
_FISH_INPUT = re.compile(r"^(?:(\d+)\s+)?([^,\d][^,]*?)\s*(?:,\s*(\d+(?:\.\d+)?))?$")

SKIP_WORDS = frozenset({"skip", "no photo", "none"})
SAME_LOCATION_WORDS = frozenset({"same", "same place", "same location"})

LAST_LOCATION_KEY = "last_catch_location"


def parse_fish_input(text: str) -> tuple[int | None, str, float | None] | None:
    match = _FISH_INPUT.match(text.strip())
    if not match:
        return None
    type_id, name, price = match.groups()
    return (
        int(type_id) if type_id else None,
        name.strip(),
        float(price) if price else None,
    )


class PostCatchHandler(FlowHandler):
    """fish type -> photo -> location -> confirm -> alerts go out"""

    flow = FlowType.FISH_POST_CATCH

    def _handlers(self):
        return {
            PostCatchStep.AWAITING_FISH_TYPE.value: self._handle_fish_type,
            PostCatchStep.AWAITING_PHOTO.value: self._handle_photo,
            PostCatchStep.AWAITING_LOCATION.value: self._handle_location,
            PostCatchStep.CONFIRM.value: self._handle_confirm,
        }

    async def first_prompt(self, session: ConversationSession) -> MessageResponse:
        return MessageResponse(
            "🎣 *Post today's catch*\n\n"
            "Which fish? Type the name and, optionally, the price per kg.\n"
            "e.g. _Sardine, 180_"
        )

    async def _handle_fish_type(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        parsed = parse_fish_input(message.content)
        if parsed is None:
            response = MessageResponse("Please type the fish name, e.g. _Sardine_ or _Sardine, 180_.")
            return response, PostCatchStep.AWAITING_FISH_TYPE.value, {}

        type_id, type_name, price = parsed
        response = MessageResponse(
            "📸 Send a photo of the catch, or reply *skip*.",
            keyboard=["Skip"],
        )
        return (
            response,
            PostCatchStep.AWAITING_PHOTO.value,
            {"type_id": type_id, "type_name": type_name, "price_per_kg": price},
        )

    def _location_prompt(self, session: ConversationSession) -> MessageResponse:
        text = "📍 Where are you selling? Share your location, or type it as _lat,lng_."
        if self.sessions.get_context(session, LAST_LOCATION_KEY):
            text += "\nReply *same* to use your last location."
        return MessageResponse(text)

    async def _handle_photo(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        if message.type == "image" and message.media_id:
            return self._location_prompt(session), PostCatchStep.AWAITING_LOCATION.value, {"photo_media_id": message.media_id}
        if message.content.lower() in SKIP_WORDS:
            return self._location_prompt(session), PostCatchStep.AWAITING_LOCATION.value, {"photo_media_id": None}
        return MessageResponse("Send a photo, or reply *skip*."), PostCatchStep.AWAITING_PHOTO.value, {}

    async def _handle_location(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        label = message.location_name
        if message.has_location:
            coords = (message.latitude, message.longitude)
        elif message.content.lower() in SAME_LOCATION_WORDS:
            last = self.sessions.get_context(session, LAST_LOCATION_KEY) or {}
            coords = (last["latitude"], last["longitude"]) if "latitude" in last else None
            label = last.get("label")
        else:
            coords = LocationValidator.parse(message.content)

        if coords is None or not LocationValidator.is_valid(*coords):
            return self._location_prompt(session), PostCatchStep.AWAITING_LOCATION.value, {}

        scratch = self.sessions.get_typed_scratch(session, PostCatchScratch)
        price = f"\n💰 ₹{scratch.price_per_kg:g}/kg" if scratch.price_per_kg is not None else ""
        photo = "\n📸 Photo attached" if scratch.photo_media_id else ""
        response = MessageResponse(
            "📋 *Please confirm*\n\n"
            f"🐟 {scratch.type_name}{price}{photo}\n"
            f"📍 {label or f'{coords[0]:.4f}, {coords[1]:.4f}'}\n\n"
            "Post it and alert nearby buyers? (yes/no)",
            keyboard=["Yes", "No"],
        )
        return (
            response,
            PostCatchStep.CONFIRM.value,
            {"latitude": coords[0], "longitude": coords[1], "location_label": label},
        )

    async def _handle_confirm(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        if is_no(message.content):
            return MessageResponse("Okay, nothing was posted.\n\n" + messages.main_menu_text(self.user.name, True)), None, {}
        if not is_yes(message.content):
            return MessageResponse("Please reply *yes* or *no*."), PostCatchStep.CONFIRM.value, {}

        scratch = self.sessions.get_typed_scratch(session, PostCatchScratch)
        if not scratch.type_name or scratch.latitude is None or scratch.longitude is None:
            response = await self.start(session)
            return response, session.current_step, {}

        try:
            event = await MarketEventService(self.db).post_catch(
                self.user,
                type_id=scratch.type_id,
                type_name=scratch.type_name,
                price_per_kg=scratch.price_per_kg,
                photo_media_id=scratch.photo_media_id,
                latitude=scratch.latitude,
                longitude=scratch.longitude,
                location_label=scratch.location_label,
            )
        except AppException as exc:
            logger.warning("Catch rejected", extra_data={"user_id": self.user.id, "error": exc.message})
            return MessageResponse(f"❌ {exc.message}"), None, {}

        stats = await AlertService(self.db).process_event(event)
        await self.sessions.set_context(
            session,
            LAST_LOCATION_KEY,
            {"latitude": scratch.latitude, "longitude": scratch.longitude, "label": scratch.location_label},
        )

        reached = stats["immediate"] + stats["batched"]
        response = MessageResponse(
            f"✅ *{event.title}* is posted!\n\n"
            f"🔔 {reached} buyer(s) nearby will be alerted."
        )
        return response, None, {}
