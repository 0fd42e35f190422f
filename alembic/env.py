"""Alembic migrations for the job queue schema (projects, jobs, runs, logs).

    alembic upgrade head                       # before starting PostgreSQL workers
    alembic upgrade head --sql                 # review the DDL instead
    alembic revision --autogenerate -m "..."   # after changing db/models.py

SQLite dev databases are created by the app on startup and rarely need this.

Online migrations run through the same async drivers as the app (asyncpg or
aiosqlite), so no synchronous driver has to be installed.  Offline mode only
needs a dialect and uses settings.sync_db_url().
"""

from __future__ import annotations

import asyncio
import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from feedbackbot.config import settings    # noqa: E402
from feedbackbot.db.models import Base     # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER tables natively; batch mode rewrites them.
        render_as_batch=settings.is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(
        url=settings.sync_db_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = create_async_engine(settings.DB_URL, poolclass=pool.NullPool)
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(_run_with)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
