"""
Database session management.

WHY: Async database sessions are required for FastAPI's async/await pattern.
Webhook deliveries and scheduler jobs each open their own session from the
same factory, so every unit of work commits or rolls back independently.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from subscription_engine.core.config import Settings, settings
from subscription_engine.models.base import Base


def build_engine(config: Optional[Settings] = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    WHY: pool_pre_ping recycles stale connections. Pool sizing only applies
    to server databases, SQLite (tests, local runs) uses its own pool.
    """
    config = config or settings
    url = config.async_database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=config.DEBUG)
    return create_async_engine(
        url,
        echo=config.DEBUG,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """
    Create a session factory bound to an engine.

    WHY: expire_on_commit=False keeps aggregates usable after commit.
    autoflush=False gives explicit control over when the version check runs.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def init_models(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    # Registers every model table on Base.metadata
    from subscription_engine import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Open a session that commits on success and rolls back on error.

    WHY: Request handlers, webhook deliveries and each item of a scheduler
    sweep are separate units of work. A failure in one must not leave
    half-applied changes behind or poison the session of the next.

    Yields:
        AsyncSession: Database session for the unit of work
    """
    async with (session_factory or AsyncSessionLocal)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
