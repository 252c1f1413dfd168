"""Async database engine and session factory for the SQL audit store.

SQLAlchemy 2.0 async with asyncpg on PostgreSQL. Redis is only touched
when AUDIT_LOCK_BACKEND=redis, so its client is created on first use.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from auditchain.config import settings

logger = logging.getLogger(__name__)


def engine_options(url: str) -> dict[str, Any]:
    """Pool options for ``url``. SQLite (tests, local runs) takes no pool sizing."""
    options: dict[str, Any] = {"echo": settings.db.echo_sql}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=3600)
    return options


engine: AsyncEngine = create_async_engine(settings.db.database_url, **engine_options(settings.db.database_url))

# Records are immutable; committed rows stay readable.
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

_redis: aioredis.Redis | None = None


def get_redis_client() -> aioredis.Redis:
    """Shared Redis client for the cross-process chain locks."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.db.redis_url)
    return _redis


async def init_db() -> None:
    """Check connectivity; outside production also create missing audit tables.

    Production schemas come from Alembic, which also installs the
    UPDATE/DELETE rejection trigger that create_all cannot express.
    """
    async with engine.begin() as conn:
        if settings.is_production:
            logger.info("Audit schema managed by Alembic (%s)", engine.url.get_backend_name())
            return

        from auditchain.models import Base

        await conn.run_sync(Base.metadata.create_all)
        logger.warning("Audit tables created without the append-only trigger (environment=%s)", settings.environment)


async def close_db() -> None:
    """Dispose the engine and, if one was opened, the Redis client."""
    global _redis
    await engine.dispose()
    if _redis is not None:
        await _redis.aclose()
        _redis = None


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Open the audit database for the lifetime of the FastAPI app."""
    await init_db()
    try:
        yield
    finally:
        await close_db()
