"""Append engine — the only component that writes to an audit chain.

Every append runs inside the chain's exclusive section:

    0. tail check: the cached tail must match the store's last record,
       otherwise the tail is repaired from the store (or the chain halts)
    1. idempotency lookup by event id
    2. sequence = tail.sequence + 1, previous_hash = tail.record_hash
    3. record_hash via the chain hasher
    4. insert (the store's unique (chain_id, sequence) is the compare-and-set)
    5. advance the cached tail
    6. release

Steps 1-5 never run outside the section, so two records can never share a
sequence or a previous_hash.

Usage:
    engine = AppendEngine(SqlAuditStore(async_session_factory))
    record = await engine.record(
        chain_id="sox-ledger",
        event_id="req-7f3a",
        actor={"id": "u-1042", "source_address": "10.0.0.7"},
        action="journal_entry.approved",
        entity_type="journal_entry",
        entity_id="JE-2291",
        before_state={"status": "pending"},
        after_state={"status": "approved"},
    )
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any, NoReturn

from auditchain.chain.builder import RecordBuilder
from auditchain.chain.hasher import ChainHasher
from auditchain.chain.locks import ChainLocks, LocalChainLocks, LockTimeout
from auditchain.config import settings
from auditchain.events import Emitter, emit
from auditchain.exceptions import (
    AppendFailed,
    ChainHalted,
    DuplicateEvent,
    StoreError,
    TailDivergence,
)
from auditchain.schemas.events import ChainEvent, EventType
from auditchain.schemas.records import Actor, AuditRecord, CandidateRecord, ChainTail
from auditchain.store.base import AuditStore

logger = logging.getLogger(__name__)


class AppendEngine:
    """Serializes appends per chain and owns each chain's tail."""

    def __init__(
        self,
        store: AuditStore,
        hasher: ChainHasher | None = None,
        builder: RecordBuilder | None = None,
        locks: ChainLocks | None = None,
        *,
        lock_timeout: float | None = None,
        store_timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        emitter: Emitter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cfg = settings.chain
        self._store = store
        self._hasher = hasher or ChainHasher(cfg.hash_algorithm)
        self._builder = builder or RecordBuilder()
        self._locks = locks or LocalChainLocks()
        self._lock_timeout = cfg.lock_timeout_seconds if lock_timeout is None else lock_timeout
        self._store_timeout = cfg.store_timeout_seconds if store_timeout is None else store_timeout
        self._max_attempts = cfg.append_max_attempts if max_attempts is None else max_attempts
        self._backoff_base = cfg.append_backoff_base_seconds if backoff_base is None else backoff_base
        self._emit = emitter or emit
        self._sleep = sleep

        # Tail state, only touched inside a chain's exclusive section
        self._tails: dict[str, ChainTail] = {}
        self._suspect: set[str] = set()
        self._halted: dict[str, str] = {}

    @property
    def hasher(self) -> ChainHasher:
        return self._hasher

    @property
    def builder(self) -> RecordBuilder:
        return self._builder

    @property
    def halted_chains(self) -> dict[str, str]:
        """Chains refusing appends, with the reason they were halted."""
        return dict(self._halted)

    # ── Public API ───────────────────────────────────────────────────

    async def record(
        self,
        chain_id: str,
        event_id: str | None,
        actor: Actor | Mapping[str, Any] | str,
        action: str,
        entity_type: str,
        entity_id: str,
        before_state: Mapping[str, Any] | None = None,
        after_state: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditRecord:
        """Build a record from caller fields and append it.

        Raises:
            ValidationError: input rejected by the builder.
            AppendFailed: transient failure, safe to retry.
            ChainHalted: the chain needs manual intervention.
        """
        candidate = self._builder.build(
            chain_id=chain_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before_state=before_state,
            after_state=after_state,
            metadata=metadata,
            event_id=event_id,
            timestamp=timestamp,
        )
        return await self.append(candidate)

    async def append(self, candidate: CandidateRecord) -> AuditRecord:
        """Append a built record to its chain.

        Returns the persisted record, or the previously persisted record
        when the event id was already appended.
        """
        record, _ = await self.append_with_status(candidate)
        return record

    async def append_with_status(self, candidate: CandidateRecord) -> tuple[AuditRecord, bool]:
        """Like append(), also telling whether this call created the record.

        The flag is decided inside the chain's exclusive section, so of any
        number of concurrent submissions of one event id at most one gets True.
        """
        chain_id = candidate.chain_id
        self._ensure_running(chain_id)
        try:
            async with self._locks.hold(chain_id, self._lock_timeout):
                return await self._append_locked(candidate)
        except LockTimeout as e:
            logger.warning("Append to chain %s timed out waiting for the chain lock", chain_id)
            raise AppendFailed(chain_id, str(e)) from e

    async def tail(self, chain_id: str) -> ChainTail:
        """The store's current tail for a chain (read-only, no lock)."""
        return await self._store.get_tail(chain_id)

    async def resume(self, chain_id: str) -> None:
        """Lift a halt after an operator has resolved the divergence.

        The tail is reloaded and validated from the store on the next append.
        """
        async with self._locks.hold(chain_id, self._lock_timeout):
            reason = self._halted.pop(chain_id, None)
            self._tails.pop(chain_id, None)
            self._suspect.discard(chain_id)
        if reason is not None:
            logger.warning("Chain %s resumed after halt (%s)", chain_id, reason)
            await self._emit(ChainEvent(
                event_type=EventType.CHAIN_RESUMED,
                chain_id=chain_id,
                data={"halt_reason": reason},
                source_module="chain.engine",
            ))

    # ── Critical section ─────────────────────────────────────────────

    async def _append_locked(self, candidate: CandidateRecord) -> tuple[AuditRecord, bool]:
        chain_id = candidate.chain_id
        # Another holder may have halted the chain while we waited
        self._ensure_running(chain_id)

        attempt = 0
        while True:
            attempt += 1
            try:
                tail = await self._checked_tail(chain_id)

                existing = await self._store.get_by_event_id(chain_id, candidate.event_id)
                if existing is not None:
                    return await self._duplicate(candidate, existing), False

                record = self._seal(candidate, tail)
                try:
                    await asyncio.wait_for(self._store.insert(record), timeout=self._store_timeout)
                except TimeoutError:
                    # The write may or may not have landed. Never retry blindly into it:
                    # the next append repairs the tail from the store first.
                    self._tails.pop(chain_id, None)
                    self._suspect.add(chain_id)
                    logger.error(
                        "Store write timed out on chain %s at sequence %d; tail marked for repair",
                        chain_id,
                        record.sequence,
                    )
                    raise AppendFailed(chain_id, "store write timed out") from None
            except DuplicateEvent as e:
                return await self._duplicate(candidate, e.existing), False
            except ChainHalted:
                raise
            except TailDivergence as e:
                # Another writer committed this sequence first; reload the tail and retry
                self._tails.pop(chain_id, None)
                logger.warning("%s (attempt %d/%d)", e, attempt, self._max_attempts)
                if attempt >= self._max_attempts:
                    raise AppendFailed(chain_id, str(e)) from e
                continue
            except StoreError as e:
                logger.warning(
                    "Transient store error on chain %s (attempt %d/%d): %s",
                    chain_id,
                    attempt,
                    self._max_attempts,
                    e,
                )
                if attempt >= self._max_attempts:
                    raise AppendFailed(chain_id, str(e)) from e
                await self._sleep(self._backoff_base * (2 ** (attempt - 1)))
                continue

            self._tails[chain_id] = ChainTail.of(record)
            logger.debug("Appended chain=%s seq=%d event=%s", chain_id, record.sequence, record.event_id)
            await self._emit(ChainEvent(
                event_type=EventType.RECORD_APPENDED,
                chain_id=chain_id,
                sequence=record.sequence,
                data={"event_id": record.event_id, "action": record.action},
                source_module="chain.engine",
            ))
            return record, True

    def _seal(self, candidate: CandidateRecord, tail: ChainTail) -> AuditRecord:
        sequence = tail.sequence + 1
        record_hash = self._hasher.hash(candidate, sequence, tail.record_hash)
        return AuditRecord(
            **candidate.model_dump(),
            sequence=sequence,
            previous_hash=tail.record_hash,
            record_hash=record_hash,
        )

    async def _duplicate(self, candidate: CandidateRecord, existing: AuditRecord) -> AuditRecord:
        if not candidate.same_payload(existing):
            logger.warning(
                "Event %s resubmitted to chain %s with a different payload; keeping sequence %d",
                candidate.event_id,
                candidate.chain_id,
                existing.sequence,
            )
        else:
            logger.info("Duplicate event %s on chain %s ignored", candidate.event_id, candidate.chain_id)
        await self._emit(ChainEvent(
            event_type=EventType.RECORD_DUPLICATE,
            chain_id=existing.chain_id,
            sequence=existing.sequence,
            data={"event_id": existing.event_id, "same_payload": candidate.same_payload(existing)},
            source_module="chain.engine",
        ))
        return existing

    # ── Tail ownership ───────────────────────────────────────────────

    async def _checked_tail(self, chain_id: str) -> ChainTail:
        """Return the tail to append after, repairing it from the store if needed."""
        cached = self._tails.get(chain_id)
        suspect = chain_id in self._suspect

        if cached is None and not suspect:
            # First append in this process: load and validate; StoreError here is transient
            stored = await self._store.get_tail(chain_id)
            tail = await self._validated(chain_id, stored)
            self._tails[chain_id] = tail
            return tail

        try:
            stored = await self._store.get_tail(chain_id)
        except StoreError as e:
            if not suspect:
                # Nothing has diverged yet; retried by the append loop
                raise
            await self._halt(chain_id, f"tail repair failed: {e}")

        if cached == stored and not suspect:
            return cached

        if cached is not None and stored.sequence < cached.sequence:
            await self._halt(
                chain_id,
                f"store tail regressed from sequence {cached.sequence} to {stored.sequence}",
            )

        logger.warning(
            "Tail divergence on chain %s: cached=%s store=%s; repairing from store",
            chain_id,
            f"{cached.sequence}:{cached.record_hash[:12]}" if cached else "unknown",
            f"{stored.sequence}:{stored.record_hash[:12]}",
        )
        try:
            tail = await self._validated(chain_id, stored)
        except StoreError as e:
            await self._halt(chain_id, f"tail repair failed: {e}")

        self._tails[chain_id] = tail
        self._suspect.discard(chain_id)
        await self._emit(ChainEvent(
            event_type=EventType.TAIL_REPAIRED,
            chain_id=chain_id,
            sequence=tail.sequence,
            data={
                "cached_sequence": cached.sequence if cached else None,
                "store_sequence": stored.sequence,
            },
            source_module="chain.engine",
        ))
        return tail

    async def _validated(self, chain_id: str, stored: ChainTail) -> ChainTail:
        """Check the store's tail against its last record before trusting it."""
        if stored.sequence == 0:
            return stored
        last = await self._store.get_record(chain_id, stored.sequence)
        if last is None or last.record_hash != stored.record_hash:
            await self._halt(chain_id, f"store tail does not match record {stored.sequence}")
        if self._hasher.rehash(last) != last.record_hash:
            await self._halt(chain_id, f"last record {stored.sequence} fails hash recomputation")
        return stored

    async def _halt(self, chain_id: str, reason: str) -> NoReturn:
        self._halted[chain_id] = reason
        self._tails.pop(chain_id, None)
        logger.critical("Halting appends to chain %s: %s", chain_id, reason)
        await self._emit(ChainEvent(
            event_type=EventType.CHAIN_HALTED,
            chain_id=chain_id,
            data={"reason": reason},
            source_module="chain.engine",
        ))
        raise ChainHalted(chain_id, reason)

    def _ensure_running(self, chain_id: str) -> None:
        reason = self._halted.get(chain_id)
        if reason is not None:
            raise ChainHalted(chain_id, f"appends halted until resumed: {reason}")
