"""Database engine and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from backend.config import Settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    """Bound how long a request may wait for a database connection."""
    url = settings.database_url
    options: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # SQLite busy timeout: how long a writer waits for the database lock.
        options["connect_args"] = {"timeout": settings.db_connect_timeout_seconds}
        if ":memory:" in url:
            return options
    else:
        options["pool_pre_ping"] = True
    options["pool_timeout"] = settings.db_pool_timeout_seconds
    return options


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        **_engine_options(settings),
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


async def get_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Yield an async database session."""
    async with session_factory() as session:
        yield session
