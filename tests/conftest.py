"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A recording fake WhatsApp provider
- Test data factories (users, subscriptions, market events)
"""
from datetime import datetime
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.exceptions import WhatsAppError
from app.db.database import Base, get_db
from app.db.models.market_event import EventKind, MarketEvent
from app.db.models.subscription import AlertFrequency, Subscription
from app.db.models.user import User
from app.domain.events import reset_event_bus
from app.domain.services.whatsapp import BaseWhatsAppProvider, SendResult, reset_providers
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 12:00 in Kochi (Asia/Kolkata) on Tuesday 10 March 2026
NOW = datetime(2026, 3, 10, 6, 30)

# Fort Kochi and points around it
KOCHI = (9.9658, 76.2421)
NEAR_KOCHI = (9.9700, 76.2500)       # ~1 km away
MATTANCHERRY = (9.9580, 76.2590)     # ~2 km away
ERNAKULAM = (9.9816, 76.2999)        # ~6.6 km away


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Fake WhatsApp provider
# ============================================================================


class FakeWhatsAppProvider(BaseWhatsAppProvider):
    """Records every send. Set ``fail_with`` to make sends raise."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_with: Exception | None = None
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"wamid.test{self._counter}"

    async def send_text(self, to, text, buttons=None) -> SendResult:
        if self.fail_with is not None:
            raise self.fail_with
        message_id = self._next_id()
        self.sent.append({"kind": "text", "to": to, "text": text, "buttons": buttons, "id": message_id})
        return SendResult(provider_message_id=message_id)

    async def send_image(self, to, image, caption=None) -> SendResult:
        if self.fail_with is not None:
            raise self.fail_with
        message_id = self._next_id()
        self.sent.append({"kind": "image", "to": to, "image": image, "text": caption, "id": message_id})
        return SendResult(provider_message_id=message_id)

    def format_text(self, html_text: str) -> str:
        return html_text

    def normalize_phone(self, phone: str) -> str:
        return phone

    @property
    def provider_name(self) -> str:
        return "fake"


@pytest.fixture
def fake_provider():
    """Fake provider installed wherever the app looks up the shared one"""
    provider = FakeWhatsAppProvider()
    with patch("app.domain.services.whatsapp.get_whatsapp_provider", return_value=provider), \
         patch("app.api.webhooks.whatsapp_cloud.get_whatsapp_provider", return_value=provider):
        yield provider


@pytest.fixture
def failing_provider(fake_provider):
    fake_provider.fail_with = WhatsAppError("Cloud API send_message failed after 3 attempts")
    return fake_provider


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        phone: str = "+919876543210",
        name: str | None = "Test Buyer",
        seller: bool = False,
        is_active: bool = True,
    ) -> User:
        user = User(
            phone=phone,
            name=name,
            is_active=is_active,
            fish_seller_profile_id=1 if seller else None,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating test subscriptions"""
    async def _create_subscription(
        user: User,
        location: tuple[float, float] = KOCHI,
        radius_km: int = 5,
        frequency: AlertFrequency = AlertFrequency.IMMEDIATE,
        type_ids: list[int] | None = None,
        **fields,
    ) -> Subscription:
        subscription = Subscription(
            user_id=user.id,
            event_kind=EventKind.NEW_CATCH,
            latitude=location[0],
            longitude=location[1],
            radius_km=radius_km,
            all_types=not type_ids,
            type_ids=type_ids or [],
            alert_frequency=frequency,
            created_at=NOW,
            **fields,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription


@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for creating posted catches"""
    async def _create_event(
        seller: User,
        location: tuple[float, float] = NEAR_KOCHI,
        title: str = "Sardine",
        type_id: int | None = 1,
        price_per_kg: float | None = 180.0,
        **fields,
    ) -> MarketEvent:
        event = MarketEvent(
            kind=EventKind.NEW_CATCH,
            source_id=seller.id,
            type_id=type_id,
            type_name=title,
            title=title,
            latitude=location[0],
            longitude=location[1],
            price_per_kg=price_per_kg,
            created_at=NOW,
            **fields,
        )
        db_session.add(event)
        await db_session.commit()
        await db_session.refresh(event)
        return event

    return _create_event


@pytest.fixture
async def seller(user_factory) -> User:
    return await user_factory(phone="+919800000001", name="Ravi", seller=True)


@pytest.fixture
async def buyer(user_factory) -> User:
    return await user_factory(phone="+919800000002", name="Anu")


# ============================================================================
# Process-wide singletons
# ============================================================================


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh event bus and provider per test"""
    reset_event_bus()
    reset_providers()
    yield
    reset_event_bus()
    reset_providers()
