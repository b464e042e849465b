"""Alembic environment.

Reads DATABASE_URL (optionally from .env) and runs migrations through the
same asyncpg driver the sync engine uses.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from adsync.database import get_async_database_url
from adsync.models import Base
from adsync.utils.env import load_env_file, require_env

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

load_env_file()
# ConfigParser interpolation: escape percent-encoded credentials
config.set_main_option("sqlalchemy.url", get_async_database_url(require_env("DATABASE_URL")).replace("%", "%%"))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
