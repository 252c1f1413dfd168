"""In-memory implementation of AuditStore."""

from __future__ import annotations

import asyncio
from datetime import datetime

from auditchain.exceptions import DuplicateEvent, TailDivergence, ValidationError
from auditchain.schemas.records import AuditRecord, ChainTail, PartitionArchive
from auditchain.store.base import AuditStore


class InMemoryAuditStore(AuditStore):
    """In-memory implementation of AuditStore for testing and development.

    Records are kept per chain in sequence order, with an event-id index.
    Queries are linear scans. Not suitable for production use.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[int, AuditRecord]] = {}
        self._events: dict[str, dict[str, int]] = {}
        self._markers: dict[str, dict[str, PartitionArchive]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, record: AuditRecord) -> None:
        async with self._lock:
            records = self._records.setdefault(record.chain_id, {})
            events = self._events.setdefault(record.chain_id, {})
            if record.event_id in events:
                raise DuplicateEvent(records[events[record.event_id]])
            if record.sequence in records:
                raise TailDivergence(
                    record.chain_id,
                    f"sequence {record.sequence} is already taken",
                )
            records[record.sequence] = record
            events[record.event_id] = record.sequence

    async def get_tail(self, chain_id: str) -> ChainTail:
        records = self._records.get(chain_id)
        if not records:
            return ChainTail.empty(chain_id)
        return ChainTail.of(records[max(records)])

    async def get_range(self, chain_id: str, from_sequence: int, to_sequence: int) -> list[AuditRecord]:
        records = self._records.get(chain_id, {})
        return [records[seq] for seq in sorted(records) if from_sequence <= seq <= to_sequence]

    async def get_record(self, chain_id: str, sequence: int) -> AuditRecord | None:
        return self._records.get(chain_id, {}).get(sequence)

    async def get_by_event_id(self, chain_id: str, event_id: str) -> AuditRecord | None:
        sequence = self._events.get(chain_id, {}).get(event_id)
        if sequence is None:
            return None
        return self._records[chain_id][sequence]

    async def list_chains(self) -> list[str]:
        return sorted(chain for chain, records in self._records.items() if records)

    async def find(
        self,
        chain_id: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        actor_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        results = []
        records = self._records.get(chain_id, {})
        for seq in sorted(records):
            record = records[seq]
            if entity_type is not None and record.entity_type != entity_type:
                continue
            if entity_id is not None and record.entity_id != entity_id:
                continue
            if actor_id is not None and record.actor.id != actor_id:
                continue
            if start is not None and record.timestamp < start:
                continue
            if end is not None and record.timestamp >= end:
                continue
            results.append(record)
            if len(results) >= limit:
                break
        return results

    async def time_bounds(self, chain_id: str) -> tuple[datetime, datetime] | None:
        records = self._records.get(chain_id)
        if not records:
            return None
        stamps = [r.timestamp for r in records.values()]
        return min(stamps), max(stamps)

    async def insert_archive_marker(self, marker: PartitionArchive) -> None:
        async with self._lock:
            markers = self._markers.setdefault(marker.chain_id, {})
            if marker.partition_id in markers:
                raise ValidationError(
                    f"Partition {marker.partition_id} of chain {marker.chain_id} is already archived",
                    field="partition_id",
                )
            markers[marker.partition_id] = marker

    async def get_archive_markers(self, chain_id: str) -> list[PartitionArchive]:
        markers = self._markers.get(chain_id, {})
        return [markers[pid] for pid in sorted(markers)]
