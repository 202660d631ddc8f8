"""Shared test infrastructure for the Pre-Market Platform test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- grant_config: GrantAccessConfig charging $50 per grant
- provider_mock: mock PaymentProviderClient returning ch_1, ch_2, ...
- notifier_mock: mock GrantNotifier recording dispatched notifications
- make_request: factory for PreMarketRequest rows
- make_grant_service / make_reconciler: services wired to the mocks above
"""

import uuid
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from premarket_platform.infra.database import Base

import premarket_platform.domain.models  # noqa: F401

from premarket_platform.app.config import GrantAccessConfig
from premarket_platform.domain.models import PreMarketRequest
from premarket_platform.services.grant_access_service import GrantAccessService
from premarket_platform.services.webhook_reconciler import WebhookReconciler


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Config and collaborator mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def grant_config():
    """Charged pricing: every grant costs $50 unless a test overrides it."""
    return GrantAccessConfig(default_charge_amount=50.0)


@pytest.fixture
def provider_mock():
    """Mock PaymentProviderClient whose charges get references ch_1, ch_2, ..."""
    mock = MagicMock()
    mock.charges = []

    async def _create_charge(amount, currency, metadata=None):
        mock.charges.append((amount, currency, metadata))
        return f"ch_{len(mock.charges)}"

    mock.create_charge = AsyncMock(side_effect=_create_charge)
    return mock


@pytest.fixture
def notifier_mock():
    """Mock GrantNotifier. Each method is an AsyncMock.

    .sent collects (kind, grant_id) for agent notifications; .requested
    collects (grant_id, status) for admin access-request alerts.
    """
    mock = MagicMock()
    mock.sent = []
    mock.requested = []

    def _recorder(kind):
        async def _record(grant):
            mock.sent.append((kind, grant.id))
        return AsyncMock(side_effect=_record)

    async def _record_request(grant):
        mock.requested.append((grant.id, grant.status))

    mock.access_unlocked = _recorder("access_unlocked")
    mock.payment_failed = _recorder("payment_failed")
    mock.grant_rejected = _recorder("grant_rejected")
    mock.access_requested = AsyncMock(side_effect=_record_request)
    mock.renter_access_granted = AsyncMock()
    return mock


# ---------------------------------------------------------------------------
# Pre-market request factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_request(db_session):
    """Factory that creates a PreMarketRequest row.

    Usage:
        request = await make_request(bedrooms=["2BR"], status="archived")
    """
    async def _factory(
        renter_id: str = "renter-1",
        request_name: str = "Two bed near the park",
        description: str | None = "Quiet building, no ground floor",
        bedrooms: list[str] | None = None,
        bathrooms: list[str] | None = None,
        price_min: float = 2000,
        price_max: float = 3500,
        status: str = "active",
    ) -> PreMarketRequest:
        today = date.today()
        request = PreMarketRequest(
            id=str(uuid.uuid4()),
            request_id="R" + uuid.uuid4().hex[:8].upper(),
            renter_id=renter_id,
            request_name=request_name,
            description=description,
            bedrooms=bedrooms or ["2BR"],
            bathrooms=bathrooms or ["1"],
            price_min=price_min,
            price_max=price_max,
            moving_date_earliest=today + timedelta(days=30),
            moving_date_latest=today + timedelta(days=60),
            status=status,
        )
        db_session.add(request)
        await db_session.flush()
        return request

    return _factory


# ---------------------------------------------------------------------------
# Service factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_grant_service(db_session, grant_config, provider_mock, notifier_mock):
    def _factory(config: GrantAccessConfig | None = None) -> GrantAccessService:
        return GrantAccessService(
            db_session,
            config=config or grant_config,
            provider=provider_mock,
            notifier=notifier_mock,
        )

    return _factory


@pytest.fixture
def make_reconciler(db_session, grant_config, notifier_mock):
    def _factory(config: GrantAccessConfig | None = None) -> WebhookReconciler:
        return WebhookReconciler(db_session, config=config or grant_config, notifier=notifier_mock)

    return _factory
