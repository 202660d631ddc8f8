"""Async engine, session factory and schema bootstrap.

Grant and payment rows are written by webhook handlers, the timeout sweep and
API calls at the same time, each on its own session. Conflicts between them
are caught by version columns at commit, so sessions never share state.
"""

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from premarket_platform.app.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for requests, grants, payments and their ledgers."""
    pass


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine; SQLite gets a long lock wait and foreign keys on."""
    if "sqlite" not in database_url:
        return create_async_engine(database_url, pool_size=5, max_overflow=10, pool_pre_ping=True)

    engine = create_async_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


settings = get_settings()

engine = build_engine(settings.database_url)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: one session per request."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(target: AsyncEngine = engine) -> None:
    """Create missing tables. Schema changes beyond that need a migration."""
    import premarket_platform.domain.models  # noqa: F401

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if target.dialect.name == "sqlite":
        async with target.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))
