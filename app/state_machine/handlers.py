"""
Flow handlers - process a message according to the session's current step
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.conversation_session import ConversationSession
from app.db.models.user import User
from app.state_machine.manager import SessionManager
from app.state_machine.states import FIRST_STEPS, FlowType

YES_WORDS = frozenset({"yes", "y", "ok", "confirm", "1"})
NO_WORDS = frozenset({"no", "n", "2"})


@dataclass
class IncomingMessage:
    """A single inbound chat message, already parsed from the provider payload"""

    phone: str
    message_id: Optional[str] = None
    type: str = "text"  # text | location | image | interactive
    text: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    media_id: Optional[str] = None
    selection_id: Optional[str] = None  # reply button / list row id
    profile_name: Optional[str] = None

    @property
    def content(self) -> str:
        """What the user picked or typed, trimmed."""
        return (self.selection_id or self.text or "").strip()

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class MessageResponse:
    """Response to be sent to user"""

    def __init__(self, text: str, keyboard: Optional[list[str]] = None):
        self.text = text
        self.keyboard = keyboard

    def __repr__(self) -> str:
        return f"MessageResponse({self.text[:40]!r})"


# (response, next step or None when the flow is finished, scratch values to merge)
StepResult = Tuple[MessageResponse, Optional[str], dict]
StepHandler = Callable[[ConversationSession, IncomingMessage], Awaitable[StepResult]]


def is_yes(text: str) -> bool:
    return text.strip().lower() in YES_WORDS


def is_no(text: str) -> bool:
    return text.strip().lower() in NO_WORDS


class FlowHandler:
    """
    Base for step-driven flows.

    Subclasses map steps to handler methods; handle() applies the returned
    scratch update and step change through the SessionManager.
    """

    flow: FlowType

    def __init__(self, db: AsyncSession, sessions: SessionManager, user: User):
        self.db = db
        self.sessions = sessions
        self.user = user

    def _handlers(self) -> dict[str, StepHandler]:
        raise NotImplementedError

    async def first_prompt(self, session: ConversationSession) -> MessageResponse:
        raise NotImplementedError

    async def start(self, session: ConversationSession) -> MessageResponse:
        """Enter the flow at its first step."""
        await self.sessions.advance(session, self.flow, FIRST_STEPS[self.flow])
        return await self.first_prompt(session)

    async def finish(self, session: ConversationSession) -> None:
        await self.sessions.reset(session)

    async def handle(self, session: ConversationSession, message: IncomingMessage) -> MessageResponse:
        handler = self._handlers().get(session.current_step, self._handle_unknown_step)
        response, next_step, scratch_update = await handler(session, message)

        if next_step is None:
            await self.finish(session)
            return response

        if scratch_update:
            await self.sessions.merge_scratch(session, scratch_update)
        if next_step != session.current_step:
            await self.sessions.set_step(session, next_step)
        return response

    async def _handle_unknown_step(self, session: ConversationSession, message: IncomingMessage) -> StepResult:
        # stored step no longer exists; back to the flow's first step, scratch dropped
        await self.sessions.restart_flow(session)
        return await self.first_prompt(session), session.current_step, {}
