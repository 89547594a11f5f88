"""Database configuration and session management."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from warden.config.settings import Settings, get_settings
from warden.db.models import Base


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    """Create the async engine for the configured database.

    SQLite and the test environment use ``NullPool``; other databases get a
    sized connection pool.
    """
    settings = settings or get_settings()

    if settings.ENVIRONMENT == "test" or settings.DATABASE_URL.startswith("sqlite"):
        return create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, poolclass=NullPool)

    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_size=settings.DATABASE_POOL_SIZE,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine, create_tables: bool = False) -> None:
    """Verify connectivity and optionally create tables.

    Args:
        engine: Engine to check.
        create_tables: Create missing tables (development and tests; production
            uses migrations).
    """
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if create_tables:
            await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections gracefully."""
    await engine.dispose()
