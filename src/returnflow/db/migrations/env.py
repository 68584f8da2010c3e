"""Alembic migration environment configuration.

This module configures how Alembic runs migrations:
- Loads SQLAlchemy models for autogenerate support
- Takes the database URL from returnflow settings (or alembic.ini)
- Supports both online and offline migration modes
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

# Importing the models registers every table on Base.metadata
from returnflow.db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    """Resolve a synchronous database URL.

    Priority:
    1. RETURNFLOW_DATABASE__URL (through returnflow settings)
    2. sqlalchemy.url from alembic.ini
    """
    from returnflow.core.config import DatabaseSettings

    configured = config.get_main_option("sqlalchemy.url", "")
    url = DatabaseSettings().url if not configured else configured
    # psycopg 3 serves both sync and async engines
    if url.startswith(("postgresql://", "postgres://")):
        url = "postgresql+psycopg://" + url.split("://", 1)[1]
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL without a connection)."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode within a transaction."""
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
