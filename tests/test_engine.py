"""Tests for auditchain/chain/engine.py — serialized appends and tail ownership."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from auditchain.chain.builder import RecordBuilder
from auditchain.chain.engine import AppendEngine
from auditchain.chain.hasher import ChainHasher
from auditchain.chain.locks import LocalChainLocks
from auditchain.exceptions import AppendFailed, ChainHalted, StoreError, TailDivergence, ValidationError
from auditchain.schemas.events import EventType
from auditchain.schemas.records import ZERO_HASH
from auditchain.store.inmemory import InMemoryAuditStore

CHAIN = "sox-ledger"


class EventLog:
    """Collects emitted ChainEvents."""

    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[EventType]:
        return [e.event_type for e in self.events]


class FlakyStore(InMemoryAuditStore):
    """Fails the first ``failures`` inserts with ``error``."""

    def __init__(self, failures: int, error: Exception) -> None:
        super().__init__()
        self.failures = failures
        self.error = error
        self.insert_calls = 0

    async def insert(self, record) -> None:
        self.insert_calls += 1
        if self.insert_calls <= self.failures:
            raise self.error
        await super().insert(record)


class SlowAckStore(InMemoryAuditStore):
    """Persists the first insert, then hangs before acknowledging it."""

    def __init__(self) -> None:
        super().__init__()
        self.hung = False

    async def insert(self, record) -> None:
        await super().insert(record)
        if not self.hung:
            self.hung = True
            await asyncio.sleep(10)


def _engine(store=None, events=None, **kwargs) -> AppendEngine:
    kwargs.setdefault("sleep", AsyncMock())
    return AppendEngine(
        store or InMemoryAuditStore(),
        ChainHasher("sha256"),
        RecordBuilder(),
        LocalChainLocks(),
        emitter=events or EventLog(),
        **kwargs,
    )


async def _record(engine, event_id=None, chain_id=CHAIN, **overrides):
    fields = {
        "actor": {"id": "u-1042", "source_address": "10.0.0.7"},
        "action": "journal_entry.approved",
        "entity_type": "journal_entry",
        "entity_id": "JE-2291",
        "before_state": {"status": "pending"},
        "after_state": {"status": "approved"},
    }
    fields.update(overrides)
    return await engine.record(chain_id=chain_id, event_id=event_id, **fields)


def _candidate(engine, event_id):
    return engine.builder.build(
        chain_id=CHAIN,
        event_id=event_id,
        actor="u-1042",
        action="journal_entry.approved",
        entity_type="journal_entry",
        entity_id="JE-2291",
    )


def _assert_linked(records) -> None:
    previous = ZERO_HASH
    for expected_sequence, record in enumerate(sorted(records, key=lambda r: r.sequence), start=1):
        assert record.sequence == expected_sequence
        assert record.previous_hash == previous
        previous = record.record_hash


class TestAppend:
    @pytest.mark.asyncio
    async def test_first_record_links_to_zero_hash(self):
        engine = _engine()
        record = await _record(engine, "e-1")
        assert record.sequence == 1
        assert record.previous_hash == ZERO_HASH
        assert record.record_hash == engine.hasher.rehash(record)

    @pytest.mark.asyncio
    async def test_sequential_appends_are_linked(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        for i in range(5):
            await _record(engine, f"e-{i}")
        _assert_linked(await store.get_range(CHAIN, 1, 5))
        assert (await engine.tail(CHAIN)).sequence == 5

    @pytest.mark.asyncio
    async def test_action_only_record(self):
        engine = _engine()
        record = await _record(engine, "e-1", action="access.granted", before_state=None, after_state=None)
        assert record.changed_fields == []
        assert record.before_state is None

    @pytest.mark.asyncio
    async def test_appended_event_emitted(self):
        events = EventLog()
        engine = _engine(events=events)
        await _record(engine, "e-1")
        assert events.types() == [EventType.RECORD_APPENDED]
        assert events.events[0].sequence == 1

    @pytest.mark.asyncio
    async def test_validation_error_propagates_and_nothing_is_stored(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        with pytest.raises(ValidationError):
            await _record(engine, "e-1", actor="anonymous")
        assert (await store.get_tail(CHAIN)).sequence == 0

    @pytest.mark.asyncio
    async def test_chains_are_independent(self):
        engine = _engine()
        a = await _record(engine, "e-1", chain_id="tenant-a")
        b = await _record(engine, "e-1", chain_id="tenant-b")
        assert a.sequence == b.sequence == 1
        assert a.record_hash != b.record_hash


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_same_event_twice_returns_same_record(self):
        store = InMemoryAuditStore()
        events = EventLog()
        engine = _engine(store, events)
        first = await _record(engine, "req-7f3a")
        second = await _record(engine, "req-7f3a")
        assert second.sequence == first.sequence
        assert second.record_hash == first.record_hash
        assert (await store.get_tail(CHAIN)).sequence == 1
        assert events.types() == [EventType.RECORD_APPENDED, EventType.RECORD_DUPLICATE]
        assert events.events[1].data["same_payload"] is True

    @pytest.mark.asyncio
    async def test_different_payload_keeps_original(self, caplog):
        engine = _engine()
        first = await _record(engine, "req-1")
        second = await _record(engine, "req-1", action="journal_entry.rejected")
        assert second == first
        assert "different payload" in caplog.text

    @pytest.mark.asyncio
    async def test_duplicate_detected_by_store_constraint(self):
        # A second engine (another process) appended the event first
        store = InMemoryAuditStore()
        engine = _engine(store)
        other = _engine(store)
        original = await _record(other, "req-1")
        store.get_by_event_id = AsyncMock(return_value=None)
        again = await _record(engine, "req-1")
        assert again == original

    @pytest.mark.asyncio
    async def test_status_tells_created_from_existing(self):
        engine = _engine()
        candidate = _candidate(engine, "req-1")
        first, created = await engine.append_with_status(candidate)
        again, created_again = await engine.append_with_status(candidate)
        assert created is True
        assert created_again is False
        assert again == first

    @pytest.mark.asyncio
    async def test_status_after_store_constraint_duplicate(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        await _record(_engine(store), "req-1")
        store.get_by_event_id = AsyncMock(return_value=None)
        candidate = _candidate(engine, "req-1")
        _, created = await engine.append_with_status(candidate)
        assert created is False


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_appends_get_consecutive_sequences(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        await _record(engine, "seed")

        results = await asyncio.gather(*[_record(engine, f"e-{i}") for i in range(25)])

        assert sorted(r.sequence for r in results) == list(range(2, 27))
        _assert_linked(await store.get_range(CHAIN, 1, 26))

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_create_one_record(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        results = await asyncio.gather(*[_record(engine, "same") for _ in range(5)])
        assert {r.sequence for r in results} == {1}
        assert (await store.get_tail(CHAIN)).sequence == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_report_one_creation(self):
        engine = _engine()
        candidate = _candidate(engine, "same")
        results = await asyncio.gather(*[engine.append_with_status(candidate) for _ in range(5)])
        assert sorted(created for _, created in results) == [False, False, False, False, True]
        assert {record.sequence for record, _ in results} == {1}


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_store_error_is_retried_with_backoff(self):
        store = FlakyStore(failures=2, error=StoreError("connection reset"))
        sleep = AsyncMock()
        engine = _engine(store, max_attempts=3, backoff_base=0.1, sleep=sleep)

        record = await _record(engine, "e-1")

        assert record.sequence == 1
        assert store.insert_calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_append_failed(self):
        store = FlakyStore(failures=10, error=StoreError("database down"))
        engine = _engine(store, max_attempts=3)
        with pytest.raises(AppendFailed):
            await _record(engine, "e-1")
        assert store.insert_calls == 3
        assert (await store.get_tail(CHAIN)).sequence == 0

    @pytest.mark.asyncio
    async def test_sequence_conflict_reloads_tail_and_retries(self):
        store = FlakyStore(failures=1, error=TailDivergence(CHAIN, "sequence 1 is already taken"))
        engine = _engine(store)
        record = await _record(engine, "e-1")
        assert record.sequence == 1
        assert store.insert_calls == 2


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_lock_timeout_fails_without_touching_tail(self):
        store = InMemoryAuditStore()
        locks = LocalChainLocks()
        engine = AppendEngine(store, locks=locks, lock_timeout=0.01, emitter=EventLog())
        async with locks.hold(CHAIN, timeout=1):
            with pytest.raises(AppendFailed):
                await _record(engine, "e-1")
        assert (await store.get_tail(CHAIN)).sequence == 0

    @pytest.mark.asyncio
    async def test_store_timeout_is_repaired_by_next_append(self):
        store = SlowAckStore()
        events = EventLog()
        engine = _engine(store, events, store_timeout=0.05)

        with pytest.raises(AppendFailed):
            await _record(engine, "e-1")

        # The write landed even though it was never acknowledged
        landed = await store.get_record(CHAIN, 1)
        assert landed is not None

        record = await _record(engine, "e-2")
        assert record.sequence == 2
        assert record.previous_hash == landed.record_hash
        assert EventType.TAIL_REPAIRED in events.types()


class TestTailRepair:
    @pytest.mark.asyncio
    async def test_stale_cached_tail_is_repaired(self):
        store = InMemoryAuditStore()
        events = EventLog()
        engine = _engine(store, events)
        other = _engine(store)

        await _record(engine, "e-1")
        foreign = await _record(other, "e-2")
        record = await _record(engine, "e-3")

        assert record.sequence == 3
        assert record.previous_hash == foreign.record_hash
        assert EventType.TAIL_REPAIRED in events.types()

    @pytest.mark.asyncio
    async def test_tampered_tail_halts_chain(self):
        store = InMemoryAuditStore()
        await _record(_engine(store), "e-1")
        original = store._records[CHAIN][1]
        store._records[CHAIN][1] = original.model_copy(update={"action": "journal_entry.deleted"})

        events = EventLog()
        engine = _engine(store, events)
        with pytest.raises(ChainHalted):
            await _record(engine, "e-2")

        assert CHAIN in engine.halted_chains
        assert EventType.CHAIN_HALTED in events.types()
        # Halted chains refuse appends without touching the store
        with pytest.raises(ChainHalted):
            await _record(engine, "e-3")
        assert (await store.get_tail(CHAIN)).sequence == 1

    @pytest.mark.asyncio
    async def test_tail_regression_halts_chain(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        await _record(engine, "e-1")
        second = await _record(engine, "e-2")

        del store._records[CHAIN][2]
        del store._events[CHAIN][second.event_id]

        with pytest.raises(ChainHalted, match="regressed"):
            await _record(engine, "e-3")

    @pytest.mark.asyncio
    async def test_unreadable_tail_is_transient(self):
        store = InMemoryAuditStore()
        engine = _engine(store, max_attempts=2)
        await _record(engine, "e-1")
        real_get_tail = store.get_tail
        store.get_tail = AsyncMock(side_effect=StoreError("connection reset"))

        with pytest.raises(AppendFailed):
            await _record(engine, "e-2")
        assert store.get_tail.await_count == 2
        assert engine.halted_chains == {}

        # Store healthy again: appends continue where they left off
        store.get_tail = real_get_tail
        record = await _record(engine, "e-3")
        assert record.sequence == 2

    @pytest.mark.asyncio
    async def test_single_tail_read_blip_is_retried(self):
        store = InMemoryAuditStore()
        engine = _engine(store)
        await _record(engine, "e-1")
        real_get_tail = store.get_tail
        store.get_tail = AsyncMock(side_effect=[StoreError("connection reset"), await real_get_tail(CHAIN)])

        record = await _record(engine, "e-2")

        assert record.sequence == 2
        assert engine.halted_chains == {}

    @pytest.mark.asyncio
    async def test_unreadable_store_during_repair_halts_chain(self):
        store = SlowAckStore()
        engine = _engine(store, store_timeout=0.05)
        with pytest.raises(AppendFailed):
            await _record(engine, "e-1")

        # The tail is suspect after the timeout, so an unreadable store cannot be repaired from
        store.get_tail = AsyncMock(side_effect=StoreError("unreachable"))
        with pytest.raises(ChainHalted, match="repair failed"):
            await _record(engine, "e-2")
        assert CHAIN in engine.halted_chains

    @pytest.mark.asyncio
    async def test_resume_lifts_halt(self):
        store = InMemoryAuditStore()
        await _record(_engine(store), "e-1")
        original = store._records[CHAIN][1]
        store._records[CHAIN][1] = original.model_copy(update={"action": "tampered"})

        events = EventLog()
        engine = _engine(store, events)
        with pytest.raises(ChainHalted):
            await _record(engine, "e-2")

        # Operator restores the record and resumes
        store._records[CHAIN][1] = original
        await engine.resume(CHAIN)

        assert engine.halted_chains == {}
        assert EventType.CHAIN_RESUMED in events.types()
        record = await _record(engine, "e-2")
        assert record.sequence == 2
        assert record.previous_hash == original.record_hash
