"""
Session Manager - per-phone conversation state, scratch data and timeouts

All methods flush; committing is the caller's job (one commit per inbound
message in MessageRouter, one per sweep in the Celery tasks).
"""
from datetime import datetime, timedelta
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.core.validation import PhoneNumberValidator
from app.db.models.conversation_session import ConversationSession
from app.db.models.user import User
from app.state_machine.scratch import build_envelope, read_envelope, load_typed
from app.state_machine.states import (
    FIRST_STEPS,
    IDLE_STEPS,
    FlowType,
    Intent,
    MenuStep,
    detect_intent,
    is_valid_step_transition,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

# Shortest flow timeout; sessions younger than this can't have expired
_MIN_FLOW_TIMEOUT_MINUTES = 10


class SessionManager:
    """Manages conversation sessions keyed by phone number"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Lookup / creation ====================

    async def _select(self, phone: str, for_update: bool = False) -> Optional[ConversationSession]:
        query = select(ConversationSession).where(ConversationSession.phone == phone)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_create(self, phone: str, *, for_update: bool = False) -> ConversationSession:
        """
        Return the session for a phone, creating it on first contact.

        Two concurrent first messages race on the unique phone index: the
        loser's insert fails inside its savepoint and it re-reads the winner.
        With for_update=True the row is locked until the caller commits.
        """
        session = await self._select(phone, for_update)
        if session:
            return session

        user_result = await self.db.execute(select(User.id).where(User.phone == phone))
        user_id = user_result.scalar_one_or_none()

        try:
            async with self.db.begin_nested():
                session = ConversationSession(
                    phone=phone,
                    user_id=user_id,
                    current_flow=FlowType.MAIN_MENU.value,
                    current_step=MenuStep.IDLE.value,
                    temp_data={},
                    context_data={},
                    last_activity_at=utcnow(),
                )
                self.db.add(session)
            logger.info(
                "Conversation session created",
                extra_data={"phone": PhoneNumberValidator.mask(phone), "user_id": user_id},
            )
            return session
        except IntegrityError:
            logger.debug(
                "Session created concurrently, re-reading",
                extra_data={"phone": PhoneNumberValidator.mask(phone)},
            )

        session = await self._select(phone, for_update)
        if session is None:
            raise RuntimeError("conversation session vanished after unique violation")
        return session

    async def get_active_or_reset(
        self,
        phone: str,
        now: datetime | None = None,
        *,
        for_update: bool = False,
    ) -> ConversationSession:
        """Load the session, resetting a timed-out mid-flow session to the main menu."""
        session = await self.get_or_create(phone, for_update=for_update)
        await self.expire_if_stale(session, now)
        return session

    async def expire_if_stale(self, session: ConversationSession, now: datetime | None = None) -> bool:
        """Reset a timed-out, non-idle session. Otherwise just touch it. Returns True on reset."""
        now = now or utcnow()
        if self.has_timed_out(session, now) and not self.is_idle(session):
            logger.info(
                "Session timed out, resetting to main menu",
                extra_data={
                    "phone": PhoneNumberValidator.mask(session.phone),
                    "flow": session.current_flow,
                    "step": session.current_step,
                    "idle_minutes": int((now - session.last_activity_at).total_seconds() // 60),
                },
            )
            await self.reset(session, now)
            return True
        self.touch(session, now)
        await self.db.flush()
        return False

    # ==================== State predicates ====================

    @staticmethod
    def is_idle(session: ConversationSession) -> bool:
        return session.current_step in IDLE_STEPS

    @staticmethod
    def timeout_minutes(session: ConversationSession) -> int:
        return FlowType.timeout_for(session.current_flow)

    def has_timed_out(self, session: ConversationSession, now: datetime | None = None) -> bool:
        if session.last_activity_at is None:
            return False
        now = now or utcnow()
        return now - session.last_activity_at >= timedelta(minutes=self.timeout_minutes(session))

    def is_active(self, session: ConversationSession, now: datetime | None = None) -> bool:
        return not self.has_timed_out(session, now)

    @staticmethod
    def detect_intent(text: str | None) -> Intent:
        return detect_intent(text)

    # ==================== Transitions ====================

    @staticmethod
    def touch(session: ConversationSession, now: datetime | None = None) -> None:
        session.last_activity_at = now or utcnow()

    async def advance(self, session: ConversationSession, flow: str, step: str) -> bool:
        """
        Move to (flow, step). Entering a different flow drops the old flow's scratch.
        Returns False for a step change the flow's transition table rejects.
        """
        flow = getattr(flow, "value", flow)
        step = getattr(step, "value", step)

        if flow == session.current_flow and not is_valid_step_transition(flow, session.current_step, step):
            logger.warning(
                "Invalid step transition attempted",
                extra_data={
                    "phone": PhoneNumberValidator.mask(session.phone),
                    "flow": flow,
                    "current_step": session.current_step,
                    "target_step": step,
                },
            )
            return False

        if flow != session.current_flow:
            session.temp_data = {}
        session.current_flow = flow
        session.current_step = step
        self.touch(session)
        await self.db.flush()
        return True

    set_flow_step = advance

    async def set_step(self, session: ConversationSession, step: str) -> bool:
        return await self.advance(session, session.current_flow, step)

    async def reset(self, session: ConversationSession, now: datetime | None = None) -> None:
        """Back to (main_menu, idle) with empty scratch. Context data is kept."""
        session.current_flow = FlowType.MAIN_MENU.value
        session.current_step = MenuStep.IDLE.value
        session.temp_data = {}
        self.touch(session, now)
        await self.db.flush()

    reset_to_main_menu = reset

    async def restart_flow(self, session: ConversationSession) -> bool:
        """Restart the current flow at its first step. Returns False (and resets) if it has none."""
        try:
            first_step = FIRST_STEPS.get(FlowType(session.current_flow))
        except ValueError:
            first_step = None
        if first_step is None or self.is_idle(session):
            await self.reset(session)
            return False
        session.current_step = first_step
        session.temp_data = {}
        self.touch(session)
        await self.db.flush()
        return True

    async def clear_session(self, session: ConversationSession) -> None:
        """Full wipe: main menu, no scratch, no context, unlinked user."""
        session.context_data = {}
        session.user_id = None
        await self.reset(session)

    async def link_user(self, session: ConversationSession, user_id: int) -> None:
        session.user_id = user_id
        await self.db.flush()

    # ==================== Scratch (flow-scoped) ====================

    def _scratch(self, session: ConversationSession) -> dict[str, Any]:
        return read_envelope(session.temp_data, session.current_flow)

    def _write_scratch(self, session: ConversationSession, data: dict[str, Any]) -> None:
        # new dict so SQLAlchemy sees the JSON change
        session.temp_data = build_envelope(session.current_flow, data)

    def get_scratch(self, session: ConversationSession, key: str | None = None, default: Any = None) -> Any:
        data = self._scratch(session)
        if key is None:
            return data
        return data.get(key, default)

    async def set_scratch(self, session: ConversationSession, key: str, value: Any) -> None:
        data = self._scratch(session)
        data[key] = value
        self._write_scratch(session, data)
        await self.db.flush()

    async def merge_scratch(self, session: ConversationSession, values: dict[str, Any]) -> None:
        data = self._scratch(session)
        data.update(values)
        self._write_scratch(session, data)
        await self.db.flush()

    async def remove_scratch(self, session: ConversationSession, key: str) -> None:
        data = self._scratch(session)
        if key in data:
            del data[key]
            self._write_scratch(session, data)
            await self.db.flush()

    async def clear_scratch(self, session: ConversationSession) -> None:
        session.temp_data = {}
        await self.db.flush()

    def get_typed_scratch(self, session: ConversationSession, model_cls: type[M]) -> M:
        return load_typed(session.temp_data, session.current_flow, model_cls)

    async def set_typed_scratch(self, session: ConversationSession, model: BaseModel) -> None:
        self._write_scratch(session, model.model_dump(mode="json"))
        await self.db.flush()

    # ==================== Context (survives flows) ====================

    @staticmethod
    def get_context(session: ConversationSession, key: str | None = None, default: Any = None) -> Any:
        context = session.context_data if isinstance(session.context_data, dict) else {}
        if key is None:
            return dict(context)
        return context.get(key, default)

    async def set_context(self, session: ConversationSession, key: str, value: Any) -> None:
        context = self.get_context(session)
        context[key] = value
        session.context_data = context
        await self.db.flush()

    async def remove_context(self, session: ConversationSession, key: str) -> None:
        context = self.get_context(session)
        if context.pop(key, None) is not None:
            session.context_data = context
            await self.db.flush()

    # ==================== Message tracking ====================

    @staticmethod
    def is_duplicate_message(session: ConversationSession, message_id: str | None) -> bool:
        return bool(message_id) and session.last_message_id == message_id

    async def record_message(
        self,
        session: ConversationSession,
        message_id: str | None,
        message_type: str | None,
    ) -> None:
        if message_id:
            session.last_message_id = message_id
        session.last_message_type = message_type
        self.touch(session)
        await self.db.flush()

    # ==================== Maintenance sweeps ====================

    async def reset_timed_out_sessions(self, now: datetime | None = None) -> int:
        """Reset every non-idle session past its flow timeout. Returns the count."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=_MIN_FLOW_TIMEOUT_MINUTES)
        result = await self.db.execute(
            select(ConversationSession).where(
                ConversationSession.current_step.notin_(IDLE_STEPS),
                ConversationSession.last_activity_at <= cutoff,
            )
        )
        reset_count = 0
        for session in result.scalars().all():
            if self.has_timed_out(session, now):
                await self.reset(session, now)
                reset_count += 1
        if reset_count:
            logger.info("Reset timed-out sessions", extra_data={"count": reset_count})
        return reset_count

    async def cleanup_old_sessions(self, days: int | None = None, now: datetime | None = None) -> int:
        """Delete sessions with no activity for ``days`` (default SESSION_RETENTION_DAYS)."""
        days = days or settings.SESSION_RETENTION_DAYS
        cutoff = (now or utcnow()) - timedelta(days=days)
        result = await self.db.execute(
            delete(ConversationSession).where(ConversationSession.last_activity_at < cutoff)
        )
        deleted = result.rowcount or 0
        logger.info(
            "Cleaned up old conversation sessions",
            extra_data={"deleted": deleted, "cutoff_days": days},
        )
        return deleted
