"""Shared test fixtures for QRShare."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.config import Settings
from backend.filesystem.blob_store import BlobStore
from backend.filesystem.chunk_store import ChunkStore
from backend.main import create_app
from backend.models.base import Base

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

logger = logging.getLogger(__name__)


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB schema,
    storage directories, services) because ASGITransport does not trigger it.
    The chunk janitor is not started.
    """
    from backend.database import create_engine as create_db_engine
    from backend.main import ensure_storage_dirs, init_services

    app = create_app(settings)
    settings.validate_runtime_settings()

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.db_health.mark_available()

    ensure_storage_dirs(settings)
    init_services(app, settings)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await engine.dispose()


@pytest.fixture
def tmp_storage_dir(tmp_path: Path) -> Path:
    """Create a temporary storage directory with the files/chunks layout."""
    storage = tmp_path / "storage"
    (storage / "files").mkdir(parents=True)
    (storage / "chunks").mkdir()
    return storage


@pytest.fixture
def test_settings(tmp_storage_dir: Path, tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        storage_dir=tmp_storage_dir,
        frontend_dir=tmp_path / "frontend",
    )


@pytest.fixture
def blob_store(test_settings: Settings) -> BlobStore:
    return BlobStore(test_settings.files_dir)


@pytest.fixture
def chunk_store(test_settings: Settings) -> ChunkStore:
    return ChunkStore(test_settings.chunks_dir)


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for tests that need several independent sessions."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
