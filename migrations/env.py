"""Alembic environment for the subscription sync tables."""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
from logging.config import fileConfig
from typing import Any

import certifi
from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import async_engine_from_config
from sqlmodel import SQLModel

from billsync.config import settings
from billsync.models import subscription  # noqa: F401 - ensure models are imported

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("billsync.alembic")
logger.setLevel(logging.INFO)
target_metadata = SQLModel.metadata


def _database_url() -> str:
    for source, value in (
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("billsync settings", settings.database_url),
    ):
        if value:
            rendered = make_url(value).render_as_string(hide_password=True)
            logger.info("Migrating %s (DATABASE_URL from %s)", rendered, source)
            return value
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def _async_url_and_args(url: str) -> tuple[str, dict[str, Any]]:
    """Force an async driver and TLS for hosted Postgres (Supabase)."""
    parsed = make_url(url)
    if parsed.drivername in ("postgresql", "postgres", "postgresql+psycopg2"):
        parsed = parsed.set(drivername="postgresql+asyncpg")

    connect_args: dict[str, Any] = {}
    query = dict(parsed.query)
    sslmode = query.pop("sslmode", None)
    host = (parsed.host or "").lower()
    if parsed.drivername.startswith("postgresql") and (
        sslmode == "require" or "supabase.co" in host
    ):
        connect_args["ssl"] = ssl.create_default_context(cafile=certifi.where())
    parsed = parsed.set(query=query)
    return parsed.render_as_string(hide_password=False), connect_args


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    url, connect_args = _async_url_and_args(_database_url())
    configuration["sqlalchemy.url"] = url
    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args=connect_args,
    )

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
