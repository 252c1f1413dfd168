"""Per-chain exclusive sections for the append engine.

Each chain gets its own lock so appends to different chains never contend.
LocalChainLocks serializes writers inside one process; RedisChainLocks
serializes writers across processes sharing a Redis instance.

Usage:
    locks = LocalChainLocks()
    async with locks.hold("sox-ledger", timeout=5.0):
        ...  # read tail, hash, insert, advance tail
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from redis.exceptions import LockError, RedisError

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """The chain's exclusive section could not be acquired in time."""


class ChainLocks(ABC):
    """Factory of per-chain exclusive sections."""

    @abstractmethod
    def hold(self, chain_id: str, timeout: float) -> contextlib.AbstractAsyncContextManager[None]:
        """Async context manager holding the chain's exclusive section.

        Raises LockTimeout if it cannot be acquired within ``timeout`` seconds.
        """


class LocalChainLocks(ChainLocks):
    """One asyncio.Lock per chain id, created lazily."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, chain_id: str) -> asyncio.Lock:
        lock = self._locks.get(chain_id)
        if lock is None:
            lock = self._locks[chain_id] = asyncio.Lock()
        return lock

    @contextlib.asynccontextmanager
    async def hold(self, chain_id: str, timeout: float) -> AsyncIterator[None]:
        lock = self._lock_for(chain_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except TimeoutError:
            raise LockTimeout(f"Timed out after {timeout}s waiting for chain {chain_id}") from None
        try:
            yield
        finally:
            lock.release()


class RedisChainLocks(ChainLocks):
    """Redis-backed lock per chain, shared by every process using the same Redis.

    ``lease_seconds`` bounds how long a crashed holder can block a chain.
    The store's unique (chain_id, sequence) constraint still protects the
    chain if a lease expires while a write is in flight.
    """

    KEY_PREFIX = "auditchain:lock:"

    def __init__(self, redis: object, lease_seconds: float = 30.0) -> None:
        self._redis = redis
        self._lease_seconds = lease_seconds

    @contextlib.asynccontextmanager
    async def hold(self, chain_id: str, timeout: float) -> AsyncIterator[None]:
        lock = self._redis.lock(  # type: ignore[attr-defined]
            f"{self.KEY_PREFIX}{chain_id}",
            timeout=self._lease_seconds,
            blocking_timeout=timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise LockTimeout(f"Redis lock for chain {chain_id} unavailable: {e}") from e
        if not acquired:
            raise LockTimeout(f"Timed out after {timeout}s waiting for chain {chain_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Redis lock lease for chain %s expired before release", chain_id)
