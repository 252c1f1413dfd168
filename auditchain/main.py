"""FastAPI application entry point — wires everything together.

Usage:
    python -m auditchain.main

Serves the audit API and, when AUDIT_VERIFY_INTERVAL_MINUTES is set,
runs the background verification sweep.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from auditchain.api.routes import router
from auditchain.config import settings
from auditchain.db.engine import db_lifespan
from auditchain.events import (
    CRITICAL_EVENTS,
    emit,
    log_integrity_alert,
    start_event_system,
    stop_event_system,
    subscribe,
)
from auditchain.jobs import verification_loop
from auditchain.schemas.events import ChainEvent, EventType

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info(
        "Starting auditchain (env=%s, hash=%s)",
        settings.environment,
        settings.chain.hash_algorithm,
    )

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system, with integrity alerts always on
        subscribe(log_integrity_alert, event_types=list(CRITICAL_EVENTS))
        await start_event_system()
        logger.info("Event system started")
        await emit(ChainEvent(
            event_type=EventType.SYSTEM_STARTUP,
            data={"hash_algorithm": settings.chain.hash_algorithm, "lock_backend": settings.chain.lock_backend},
            source_module="main",
        ))

        # 3. Background verification sweep
        sweep: asyncio.Task[None] | None = None
        interval = settings.retention.verify_interval_minutes
        if interval > 0:
            sweep = asyncio.create_task(verification_loop(interval))
            logger.info("Verification sweep scheduled every %d minute(s)", interval)
        else:
            logger.warning("AUDIT_VERIFY_INTERVAL_MINUTES is 0 — background verification disabled")

        try:
            yield
        finally:
            logger.info("Shutting down auditchain...")

            if sweep is not None:
                sweep.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweep
                logger.info("Verification sweep stopped")

            await emit(ChainEvent(event_type=EventType.SYSTEM_SHUTDOWN, source_module="main"))
            await stop_event_system()
            logger.info("Event system stopped")

    logger.info("auditchain shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="auditchain API",
    description="Tamper-evident, append-only audit log",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
        "hash_algorithm": settings.chain.hash_algorithm,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "auditchain.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
