"""Pytest configuration and shared fixtures.

Tests run against a SQLite file per test (aiosqlite), created from the ORM
metadata. Sessions opened by a test must be committed before the engine,
worker or API touch the database, since SQLite allows one writer at a time.
"""

import contextlib
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from purgecert.api import create_app
from purgecert.core.config import DatabaseSettings, ExecutionSettings, Settings
from purgecert.db import create_engine_from_settings, create_session_factory
from purgecert.db.models import Base
from purgecert.services.execution import ExecutionConfig, ExecutionEngine
from purgecert.services.signing import KeyRing
from tests.factories import InMemoryRecordStore


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'purgecert.db'}"),
        execution=ExecutionSettings(
            batch_size=2,
            max_concurrent_batches=1,
            base_backoff_seconds=0,
            max_backoff_seconds=0,
        ),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
async def db_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine_from_settings(settings.database)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------
@pytest.fixture
def keyring() -> KeyRing:
    return KeyRing()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the execution engine."""
    return []


@pytest.fixture
def execution_config() -> ExecutionConfig:
    return ExecutionConfig(
        batch_size=2,
        max_concurrent_batches=1,
        max_action_attempts=3,
        base_backoff_seconds=1.0,
        max_backoff_seconds=30.0,
        max_scan_attempts=3,
        liveness_timeout_seconds=60,
    )


@pytest.fixture
def make_engine(session_factory, record_store, keyring, execution_config, sleeps):
    """Build execution engines that record backoff delays instead of sleeping."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(owner: str = "engine-a", **kwargs) -> ExecutionEngine:
        kwargs.setdefault("config", execution_config)
        return ExecutionEngine(
            session_factory,
            kwargs.pop("store", record_store),
            keyring,
            owner=owner,
            sleep=fake_sleep,
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------
@pytest.fixture
async def api_client(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    keyring: KeyRing,
    record_store: InMemoryRecordStore,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app wired to the test database and record store."""
    app = create_app(
        settings,
        session_factory=session_factory,
        keyring=keyring,
        record_store_factory=lambda: contextlib.nullcontext(record_store),
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return {"X-Operator-Id": "dpo@example.com"}
