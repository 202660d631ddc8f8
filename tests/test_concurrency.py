"""Optimistic concurrency: two sessions on one file-backed SQLite database.

An in-memory database is per-connection, so these tests use a temp file to
let two sessions see each other's commits.
"""

from datetime import date
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from premarket_platform.app.config import GrantAccessConfig
from premarket_platform.domain.errors import ConcurrentWriteConflict, DuplicateActiveGrant
from premarket_platform.domain.models import PreMarketRequest
from premarket_platform.infra.database import build_engine, init_db
from premarket_platform.services.grant_access_service import GrantAccessService
from premarket_platform.services.grant_transitions import (
    CONFLICT_RETRY_LIMIT,
    commit_with_retry,
    load_grant,
)


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def seeded_grant(session_factory, provider_mock, notifier_mock):
    """An approved $50 grant committed through the service."""
    async with session_factory() as db:
        request = PreMarketRequest(
            request_id="RCONC0001",
            renter_id="renter-1",
            request_name="Loft",
            bedrooms=["1BR"],
            bathrooms=["1"],
            price_min=1000,
            price_max=2000,
            moving_date_earliest=date(2026, 6, 1),
            moving_date_latest=date(2026, 7, 1),
        )
        db.add(request)
        await db.commit()
        service = GrantAccessService(
            db, GrantAccessConfig(default_charge_amount=50), provider=provider_mock, notifier=notifier_mock,
        )
        grant = await service.create_grant("RCONC0001", "agent-1")
        return grant.id


async def _touch_grant(session_factory, grant_id: str, email: str) -> None:
    async with session_factory() as other:
        grant = await load_grant(other, grant_id)
        grant.agent_email = email
        await other.commit()


class TestVersionCheck:
    async def test_losing_writer_gets_stale_data_error(self, session_factory, seeded_grant):
        async with session_factory() as db:
            grant = await load_grant(db, seeded_grant)
            await _touch_grant(session_factory, seeded_grant, "b@example.com")

            grant.rejection_reason = "overwrite attempt"
            with pytest.raises(StaleDataError):
                await db.commit()

    async def test_retry_applies_change_on_fresh_state(self, session_factory, seeded_grant):
        calls = []

        async with session_factory() as db:
            async def operation():
                grant = await load_grant(db, seeded_grant)
                if not calls:
                    await _touch_grant(session_factory, seeded_grant, "b@example.com")
                calls.append(grant.version)
                grant.rejection_reason = "from a"
                return grant

            grant = await commit_with_retry(db, operation, "test")

        assert len(calls) == 2
        assert calls[1] == calls[0] + 1
        async with session_factory() as check:
            final = await load_grant(check, seeded_grant)
            assert final.agent_email == "b@example.com"
            assert final.rejection_reason == "from a"
            assert final.version == grant.version

    async def test_gives_up_after_retry_limit(self, session_factory, seeded_grant):
        calls = []

        async with session_factory() as db:
            async def operation():
                grant = await load_grant(db, seeded_grant)
                await _touch_grant(session_factory, seeded_grant, f"b{len(calls)}@example.com")
                calls.append(1)
                grant.rejection_reason = "never lands"

            with pytest.raises(ConcurrentWriteConflict):
                await commit_with_retry(db, operation, "test")

        assert len(calls) == CONFLICT_RETRY_LIMIT


class TestActiveGrantUniqueness:
    async def test_unique_key_blocks_racing_creation(self, session_factory, seeded_grant, provider_mock, notifier_mock):
        """Even when the application check is bypassed, the database refuses a second active grant."""
        async with session_factory() as db:
            service = GrantAccessService(
                db, GrantAccessConfig(default_charge_amount=50), provider=provider_mock, notifier=notifier_mock,
            )
            service._release_expired_or_refuse = AsyncMock(return_value=None)

            with pytest.raises(DuplicateActiveGrant):
                await service.create_grant("RCONC0001", "agent-1")
