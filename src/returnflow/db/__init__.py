"""returnflow database module.

Database models and migrations:
- SQLAlchemy 2.x async ORM models
- Alembic migration configuration
- Connection pooling via psycopg (PostgreSQL) or aiosqlite (dev/tests)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from returnflow.core.config import DatabaseSettings

# Module-level session factory (initialized on first use)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url(database: DatabaseSettings) -> str:
    """Normalise the configured URL to an async driver.

    Args:
        database: Database settings.

    Returns:
        SQLAlchemy URL using psycopg (PostgreSQL) or aiosqlite (SQLite).
    """
    url = database.url
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def build_engine(database: DatabaseSettings) -> AsyncEngine:
    """Create an async engine for the configured backend.

    SQLite does not accept pool sizing arguments, so they are only passed
    for PostgreSQL.
    """
    url = get_database_url(database)
    if database.is_sqlite:
        return create_async_engine(
            url,
            echo=database.echo,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        echo=database.echo,
    )


def _init_engine() -> None:
    """Initialize the database engine and session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        return

    from returnflow.core.settings import get_settings

    settings = get_settings()
    _engine = build_engine(settings.database)
    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating it on first use."""
    _init_engine()

    if _async_session_factory is None:
        msg = "Database session factory not initialized"
        raise RuntimeError(msg)
    return _async_session_factory


@asynccontextmanager
async def get_async_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    The session is rolled back if the body raises and always closed.
    ``factory`` overrides the process-wide factory (tests bind their own).

    Usage:
        async with get_async_session() as session:
            result = await session.execute(query)
            await session.commit()

    Yields:
        AsyncSession for database operations.
    """
    session = (factory or get_session_factory())()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_schema(engine: AsyncEngine | None = None) -> None:
    """Create all tables directly from model metadata.

    Intended for development and tests; deployed databases use Alembic.
    """
    from returnflow.db.models import Base

    if engine is None:
        _init_engine()
        engine = _engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_engine() -> None:
    """Close the database engine.

    Call this during application shutdown to clean up connections.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
