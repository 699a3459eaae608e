"""
Pytest configuration and fixtures.

Provides reusable fixtures for storage and API testing:
- settings: Settings with zero retry delays
- s3, blob: In-memory providers for the default and fallback backends
- manager: StorageManager over those providers
- session_factory: Async sessions on a per-test SQLite file
- app / client: The FastAPI app wired to the test database and providers
"""

import os

# Must be set before apps.api.config / db.session are imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6380/0"
os.environ["STORAGE_RETRY_DELAY_SECONDS"] = "0"
os.environ["DERIVATIVE_RETRY_DELAY_SECONDS"] = "0"
os.environ["USE_ARQ_WORKER"] = "false"

from collections.abc import AsyncGenerator, Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402

import db.models  # noqa: E402,F401
from apps.api.config import Settings  # noqa: E402
from db.base import Base  # noqa: E402
from packages.shared.storage import (  # noqa: E402
    StorageBackend,
    StorageManager,
    StorageManagerConfig,
)
from tests.fakes import FakeProvider, RecordingScheduler  # noqa: E402

# =============================================================================
# Settings Fixture
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with instant retries and the default limits."""
    return Settings(
        _env_file=None,
        storage_retry_delay_seconds=0.0,
        derivative_retry_delay_seconds=0.0,
    )


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def s3() -> FakeProvider:
    return FakeProvider(StorageBackend.S3)


@pytest.fixture
def blob() -> FakeProvider:
    return FakeProvider(StorageBackend.VERCEL_BLOB)


@pytest.fixture
def icp() -> FakeProvider:
    return FakeProvider(StorageBackend.ICP)


@pytest.fixture
def manager(s3: FakeProvider, blob: FakeProvider, icp: FakeProvider) -> StorageManager:
    """Manager with S3 as default, blob as fallback and ICP for replication."""
    return StorageManager(
        providers=[s3, blob, icp],
        config=StorageManagerConfig(
            default_backend=StorageBackend.S3,
            fallback_backends=[StorageBackend.VERCEL_BLOB],
            max_retries=3,
            retry_delay=0.0,
        ),
    )


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


# =============================================================================
# Database Fixtures
# =============================================================================


def build_async_engine(url: str):
    """
    Async SQLite engine whose transactions take the write lock up front.

    Concurrent sessions then queue on the lock instead of failing on a
    read-to-write upgrade.
    """
    engine = create_async_engine(url, poolclass=NullPool, connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
def database_path(tmp_path) -> str:
    """Create the schema in a fresh SQLite file."""
    path = tmp_path / "memories.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return str(path)


@pytest.fixture
def session_factory(database_path: str) -> async_sessionmaker[AsyncSession]:
    engine = build_async_engine(f"sqlite+aiosqlite:///{database_path}")
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Single session for ledger-level tests (holds the write lock while open)."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# App / Client Fixtures
# =============================================================================


@pytest.fixture(scope="module")
def app() -> FastAPI:
    """
    Import and return the FastAPI application.

    Scope: module (one app instance per test module)
    """
    from apps.api.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(
    app: FastAPI,
    session_factory,
    manager: StorageManager,
) -> Generator[TestClient, None, None]:
    """
    TestClient wired to the per-test database and in-memory providers.

    Clears dependency_overrides and app.state before and after each test.
    """
    app.dependency_overrides.clear()
    app.state.session_factory = session_factory
    app.state.storage_manager = manager

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    for name in ("session_factory", "storage_manager", "derivative_scheduler", "identity_resolver"):
        if hasattr(app.state, name):
            delattr(app.state, name)
