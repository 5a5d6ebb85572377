"""
Async alembic environment for the standings engine schema.

Run from apps/standings_engine, where alembic.ini lives. The database URL is
always DATABASE_URL (see standings_engine.database.db), never alembic.ini.
"""

from logging.config import fileConfig
import asyncio
import logging
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context

from standings_engine.database.db import Base, DATABASE_URL
from standings_engine.database import models  # noqa: F401  (registers every table)

logger = logging.getLogger(__name__)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_label(url: str) -> str:
    """host/dbname part of the URL, without credentials."""
    return url.rsplit("@", 1)[-1] if "@" in url else url.split("://", 1)[0]


def _configure_options(url: str) -> dict:
    # SQLite cannot ALTER most constraints in place
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout without connecting."""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(DATABASE_URL),
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate_with(connection: Connection) -> None:
    context.configure(connection=connection, **_configure_options(DATABASE_URL))
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_async() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = DATABASE_URL
    engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate_with)
    except Exception as e:
        logger.error(f"Schema migration against {_database_label(DATABASE_URL)} failed: {e}", exc_info=True)
        raise
    finally:
        await engine.dispose()


def run_migrations_online() -> None:
    logger.info(f"Migrating standings schema on {_database_label(DATABASE_URL)}")
    asyncio.run(_migrate_async())
    logger.info("✓ Standings schema is up to date")


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
