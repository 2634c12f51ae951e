"""
Tests for SessionManager (app/state_machine/manager.py)

Covers:
- session creation and lookup by phone
- step transitions and the per-flow transition tables
- flow-scoped scratch envelope (isolation, corrupt data)
- context data surviving resets
- inactivity timeout and the maintenance sweeps
- intent keywords
"""
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.conversation_session import ConversationSession
from app.state_machine.manager import SessionManager
from app.state_machine.scratch import SubscribeScratch
from app.state_machine.states import (
    FlowType,
    Intent,
    PostCatchStep,
    SubscribeStep,
    detect_intent,
    is_valid_step_transition,
)
from tests.conftest import NOW

PHONE = "+919800000010"


@pytest.fixture
def sessions(db_session: AsyncSession) -> SessionManager:
    return SessionManager(db_session)


class TestGetOrCreate:
    @pytest.mark.integration
    async def test_new_session_starts_idle(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)

        assert session.id is not None
        assert session.current_flow == FlowType.MAIN_MENU.value
        assert session.current_step == "idle"
        assert sessions.is_idle(session)

    @pytest.mark.integration
    async def test_second_call_returns_same_row(self, sessions: SessionManager, db_session) -> None:
        first = await sessions.get_or_create(PHONE)
        await db_session.commit()
        second = await sessions.get_or_create(PHONE, for_update=True)

        assert first.id == second.id
        count = (await db_session.execute(select(ConversationSession))).scalars().all()
        assert len(count) == 1

    @pytest.mark.integration
    async def test_links_existing_user(self, sessions: SessionManager, buyer) -> None:
        session = await sessions.get_or_create(buyer.phone)
        assert session.user_id == buyer.id


class TestTransitions:
    @pytest.mark.integration
    async def test_enter_flow_and_advance(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)

        assert await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        assert await sessions.set_step(session, SubscribeStep.ASK_RADIUS.value)
        assert session.current_step == SubscribeStep.ASK_RADIUS.value

    @pytest.mark.integration
    async def test_skipping_steps_is_refused(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)

        assert not await sessions.set_step(session, SubscribeStep.CONFIRM.value)
        assert session.current_step == SubscribeStep.ASK_LOCATION.value

    @pytest.mark.integration
    async def test_unknown_target_step_is_refused_without_raising(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        await sessions.set_scratch(session, "latitude", 9.9)

        assert await sessions.set_step(session, "no_such_step") is False
        assert session.current_flow == FlowType.FISH_SUBSCRIBE.value
        assert session.current_step == SubscribeStep.ASK_LOCATION.value
        assert sessions.get_scratch(session) == {"latitude": 9.9}

    @pytest.mark.unit
    def test_transition_table(self) -> None:
        flow = FlowType.FISH_POST_CATCH.value
        assert is_valid_step_transition(flow, PostCatchStep.AWAITING_PHOTO.value, PostCatchStep.AWAITING_LOCATION.value)
        assert is_valid_step_transition(flow, PostCatchStep.AWAITING_PHOTO.value, PostCatchStep.AWAITING_PHOTO.value)
        assert not is_valid_step_transition(flow, PostCatchStep.AWAITING_PHOTO.value, PostCatchStep.CONFIRM.value)
        assert not is_valid_step_transition(flow, PostCatchStep.AWAITING_PHOTO.value, "no_such_step")
        # flows without a table accept anything
        assert is_valid_step_transition(FlowType.JOB_POST.value, "a", "b")

    @pytest.mark.integration
    async def test_restart_flow_goes_to_first_step(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        await sessions.set_step(session, SubscribeStep.ASK_RADIUS.value)
        await sessions.set_scratch(session, "latitude", 9.9)

        assert await sessions.restart_flow(session)
        assert session.current_step == SubscribeStep.ASK_LOCATION.value
        assert sessions.get_scratch(session) == {}

    @pytest.mark.integration
    async def test_restart_when_idle_resets(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        assert not await sessions.restart_flow(session)
        assert sessions.is_idle(session)


class TestScratch:
    @pytest.mark.integration
    async def test_scratch_is_scoped_to_flow(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        await sessions.merge_scratch(session, {"latitude": 9.96, "longitude": 76.24})
        assert sessions.get_scratch(session, "latitude") == 9.96

        await sessions.advance(session, FlowType.FISH_POST_CATCH, PostCatchStep.AWAITING_FISH_TYPE)
        assert sessions.get_scratch(session) == {}

    @pytest.mark.integration
    async def test_envelope_from_other_flow_reads_empty(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        session.temp_data = {"v": 1, "flow": FlowType.FISH_POST_CATCH.value, "data": {"latitude": 1.0}}

        assert sessions.get_scratch(session) == {}

    @pytest.mark.integration
    @pytest.mark.parametrize("raw", ["not json", {"latitude": 1.0}, {"v": 99, "flow": "fish_subscribe", "data": {}}, None])
    async def test_corrupt_scratch_reads_empty(self, sessions: SessionManager, raw) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        session.temp_data = raw

        assert sessions.get_scratch(session) == {}
        assert sessions.get_typed_scratch(session, SubscribeScratch) == SubscribeScratch()

    @pytest.mark.integration
    async def test_invalid_typed_scratch_falls_back(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        await sessions.merge_scratch(session, {"radius_km": "far"})

        assert sessions.get_typed_scratch(session, SubscribeScratch).radius_km is None

    @pytest.mark.integration
    async def test_remove_scratch_key(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        await sessions.merge_scratch(session, {"latitude": 9.96, "longitude": 76.24})
        await sessions.remove_scratch(session, "latitude")

        assert sessions.get_scratch(session) == {"longitude": 76.24}


class TestContext:
    @pytest.mark.integration
    async def test_context_survives_reset(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.set_context(session, "last_catch_location", {"latitude": 9.96})
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        await sessions.reset(session)

        assert sessions.get_context(session, "last_catch_location") == {"latitude": 9.96}

    @pytest.mark.integration
    async def test_clear_session_wipes_everything(self, sessions: SessionManager, buyer) -> None:
        session = await sessions.get_or_create(buyer.phone)
        await sessions.set_context(session, "k", "v")
        await sessions.clear_session(session)

        assert session.context_data == {}
        assert session.user_id is None
        assert sessions.is_idle(session)


class TestTimeout:
    @pytest.mark.integration
    async def test_stale_flow_is_reset(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        session.last_activity_at = NOW - timedelta(minutes=16)

        assert await sessions.expire_if_stale(session, NOW)
        assert sessions.is_idle(session)
        assert session.last_activity_at == NOW

    @pytest.mark.integration
    async def test_fresh_flow_is_touched(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        session.last_activity_at = NOW - timedelta(minutes=5)

        assert not await sessions.expire_if_stale(session, NOW)
        assert session.current_flow == FlowType.FISH_SUBSCRIBE.value
        assert session.last_activity_at == NOW

    @pytest.mark.integration
    @pytest.mark.parametrize("idle_minutes, active", [(14, True), (16, False)])
    async def test_is_active_around_timeout(
        self, sessions: SessionManager, idle_minutes: int, active: bool
    ) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.advance(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        session.last_activity_at = NOW - timedelta(minutes=idle_minutes)

        # fish_subscribe times out after 15 minutes
        assert sessions.is_active(session, NOW) is active
        assert sessions.has_timed_out(session, NOW) is not active

    @pytest.mark.unit
    def test_flow_specific_timeouts(self) -> None:
        assert FlowType.FISH_POST_CATCH.timeout_minutes == 15
        assert FlowType.JOB_EXECUTION.timeout_minutes == 60
        assert FlowType.timeout_for("unknown_flow") == 30

    @pytest.mark.integration
    async def test_sweep_resets_only_expired(self, sessions: SessionManager, db_session) -> None:
        expired = await sessions.get_or_create("+919800000011")
        await sessions.advance(expired, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        expired.last_activity_at = NOW - timedelta(minutes=20)

        recent = await sessions.get_or_create("+919800000012")
        await sessions.advance(recent, FlowType.FISH_SUBSCRIBE, SubscribeStep.ASK_LOCATION)
        recent.last_activity_at = NOW - timedelta(minutes=12)
        await db_session.flush()

        assert await sessions.reset_timed_out_sessions(NOW) == 1
        assert sessions.is_idle(expired)
        assert not sessions.is_idle(recent)

    @pytest.mark.integration
    async def test_cleanup_old_sessions(self, sessions: SessionManager, db_session) -> None:
        old = await sessions.get_or_create("+919800000013")
        old.last_activity_at = NOW - timedelta(days=8)
        await sessions.get_or_create("+919800000014")
        await db_session.commit()

        deleted = await sessions.cleanup_old_sessions(days=7, now=NOW)
        await db_session.commit()

        assert deleted == 1
        remaining = (await db_session.execute(select(ConversationSession.phone))).scalars().all()
        assert remaining == ["+919800000014"]


class TestMessageTracking:
    @pytest.mark.integration
    async def test_duplicate_detection(self, sessions: SessionManager) -> None:
        session = await sessions.get_or_create(PHONE)
        await sessions.record_message(session, "wamid.1", "text")

        assert sessions.is_duplicate_message(session, "wamid.1")
        assert not sessions.is_duplicate_message(session, "wamid.2")
        assert not sessions.is_duplicate_message(session, None)


class TestIntent:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "text, intent",
        [
            ("menu", Intent.MENU),
            ("  MENU ", Intent.MENU),
            ("0", Intent.MENU),
            ("cancel", Intent.CANCEL),
            ("help", Intent.HELP),
            ("restart", Intent.RESTART),
            ("start   over", Intent.RESTART),
            ("start", Intent.MENU),
            ("menu please", Intent.NONE),
            ("", Intent.NONE),
            (None, Intent.NONE),
        ],
    )
    def test_detect_intent(self, text, intent) -> None:
        assert detect_intent(text) == intent
