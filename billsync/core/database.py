"""Async engine used by the readiness probe and app lifecycle hooks."""

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from billsync.config import settings
from billsync.observability.metrics import metrics

logger = logging.getLogger(__name__)

engine: AsyncEngine | None = None

_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "postgresql+psycopg2": "postgresql+asyncpg",
}


def async_database_url(database_url: str) -> str:
    """Swap sync Postgres drivers for asyncpg; other URLs pass through."""
    url = make_url(database_url)
    driver = _ASYNC_DRIVERS.get(url.drivername)
    if driver is None:
        return database_url
    query = dict(url.query)
    query.pop("sslmode", None)
    return url.set(drivername=driver, query=query).render_as_string(hide_password=False)


async def init_database(database_url: str | None = None) -> AsyncEngine | None:
    """Create the shared async engine when a database is configured."""
    global engine  # noqa: PLW0603

    resolved = database_url or settings.database_url
    if not resolved:
        logger.info("No DATABASE_URL provided, running with the in-memory store")
        return None

    url = async_database_url(resolved)
    engine_kwargs: dict = {"echo": settings.debug, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(settings.db_pool_min_size, 1)
        overflow = settings.db_pool_max_size - settings.db_pool_min_size
        engine_kwargs["max_overflow"] = max(overflow, 0)
        engine_kwargs["pool_recycle"] = 300
    try:
        engine = create_async_engine(url, **engine_kwargs)
    except (SQLAlchemyError, ImportError, ValueError):
        logger.exception("database.init_failed")
        raise
    logger.info(
        "database.initialized",
        extra={"url": make_url(url).render_as_string(hide_password=True)},
    )
    return engine


async def dispose_database() -> None:
    global engine  # noqa: PLW0603
    if engine is not None:
        await engine.dispose()
    engine = None


async def check_database_health() -> bool:
    """Run ``SELECT 1``; without a configured database there is nothing to check."""
    if engine is None:
        return True

    started = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("database.health_failed", extra={"error": str(exc)})
        metrics.increment("database.health.failed")
        return False
    metrics.timing("database.health.latency_ms", (time.perf_counter() - started) * 1000)
    return True
