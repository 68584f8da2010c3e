"""Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database (aiosqlite) with the schema
created from model metadata, and an in-memory parcel tracking adapter.
Set TEST_DATABASE_URL to run the same suite against PostgreSQL.
"""

import os
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from returnflow.api import create_app
from returnflow.core.config import DatabaseSettings, Settings
from returnflow.core.settings import clear_settings_cache
from returnflow.db import build_engine, get_database_url, init_schema
from returnflow.db.models import Base
from returnflow.services.events import CaseEventPublisher
from returnflow.services.lifecycle import CaseLifecycleService
from returnflow.services.parcels import InMemoryParcelTracking
from tests.factories import ELIGIBLE_PARCEL_ID


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@pytest.fixture
def database_url() -> str:
    """Test database URL from environment, defaulting to in-memory SQLite."""
    return os.environ.get("TEST_DATABASE_URL", "sqlite://")


@pytest.fixture
def settings(database_url: str) -> Settings:
    """Development settings pointing at the test database."""
    clear_settings_cache()
    return Settings(environment="dev", database=DatabaseSettings(url=database_url))


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Engine with a freshly created schema.

    In-memory SQLite needs a single shared connection (StaticPool) so every
    session sees the same database.
    """
    if settings.database.is_sqlite:
        test_engine = create_async_engine(
            get_database_url(settings.database),
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        test_engine = build_engine(settings.database)

    await init_schema(test_engine)
    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborators and service
# ---------------------------------------------------------------------------
@pytest.fixture
def tracking() -> InMemoryParcelTracking:
    """In-memory parcel tracking with one eligible parcel."""
    tracking = InMemoryParcelTracking()
    tracking.add_parcel(ELIGIBLE_PARCEL_ID)
    return tracking


@pytest.fixture
def publisher() -> CaseEventPublisher:
    return CaseEventPublisher()


@pytest.fixture
def service(
    db_session: AsyncSession,
    tracking: InMemoryParcelTracking,
    publisher: CaseEventPublisher,
) -> CaseLifecycleService:
    """Lifecycle service bound to the test session."""
    return CaseLifecycleService(db_session, tracking, tracking, publisher=publisher)


# ---------------------------------------------------------------------------
# API client fixture (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------
@pytest.fixture
def test_app(
    settings: Settings,
    tracking: InMemoryParcelTracking,
    session_factory: async_sessionmaker[AsyncSession],
    publisher: CaseEventPublisher,
):
    """FastAPI app wired to the test database and in-memory tracking."""
    return create_app(
        settings,
        parcel_tracking=tracking,
        session_factory=session_factory,
        case_events=publisher,
    )


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
