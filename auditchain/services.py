"""Process-wide wiring of the audit core.

One store, one append engine (it owns the chain tails, so there must be
exactly one per process), one verifier and one partition manager, all
built from settings.

Usage:
    services = get_services()
    await services.engine.record(...)
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass

from auditchain.chain.engine import AppendEngine
from auditchain.chain.hasher import ChainHasher
from auditchain.chain.locks import ChainLocks, LocalChainLocks, RedisChainLocks
from auditchain.chain.verifier import ChainVerifier
from auditchain.config import settings
from auditchain.retention.partitions import PartitionManager
from auditchain.retention.sinks import ArchiveSink, FileArchiveSink
from auditchain.store.base import AuditStore
from auditchain.store.sql import SqlAuditStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: AuditStore
    engine: AppendEngine
    verifier: ChainVerifier
    partitions: PartitionManager
    sink: ArchiveSink


def build_services(
    store: AuditStore,
    locks: ChainLocks | None = None,
    sink: ArchiveSink | None = None,
) -> Services:
    """Wire the core around ``store`` using the configured algorithm and policies."""
    hasher = ChainHasher(settings.chain.hash_algorithm)
    verifier = ChainVerifier(store, hasher)
    return Services(
        store=store,
        engine=AppendEngine(store, hasher, locks=locks),
        verifier=verifier,
        partitions=PartitionManager(store, hasher, verifier),
        sink=sink or FileArchiveSink(settings.retention.archive_dir),
    )


def _configured_locks() -> ChainLocks:
    if settings.chain.lock_backend == "redis":
        from auditchain.db.engine import get_redis_client

        logger.info("Using Redis chain locks at %s", settings.db.redis_url)
        return RedisChainLocks(get_redis_client())
    return LocalChainLocks()


@functools.lru_cache(maxsize=1)
def get_services() -> Services:
    """The process-wide services, backed by the configured database."""
    from auditchain.db.engine import async_session_factory

    return build_services(SqlAuditStore(async_session_factory), locks=_configured_locks())
