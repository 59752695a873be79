"""Alembic environment - runs migrations against DATABASE_URL."""

import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

from stampledger.db.models import Base
from stampledger.db.migration_runner import get_sync_database_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata

# The startup runner passes its URL explicitly; from the CLI, DATABASE_URL wins over alembic.ini
env_url = config.attributes.get("sync_url") or os.getenv("DATABASE_URL")
if env_url:
    config.set_main_option("sqlalchemy.url", get_sync_database_url(env_url).replace("%", "%%"))

DB_URL: str = config.get_main_option("sqlalchemy.url") or ""
IS_SQLITE = DB_URL.startswith("sqlite")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode: SQL emitted as script."""
    context.configure(
        url=DB_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=IS_SQLITE,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode with a blocking engine."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=IS_SQLITE,
        )

        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
