"""AuditStore abstract interface.

Insert and read only. There is deliberately no update or delete method:
records are immutable once written, and archival writes a marker
instead of touching the records.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from auditchain.schemas.records import AuditRecord, ChainTail, PartitionArchive


class AuditStore(ABC):
    """Abstract interface for append-only audit storage.

    ``insert`` must enforce uniqueness of (chain_id, sequence) and
    (chain_id, event_id):

    - sequence already taken → TailDivergence
    - event id already taken → DuplicateEvent carrying the stored record
    - any other storage failure → StoreError
    """

    # Write path
    @abstractmethod
    async def insert(self, record: AuditRecord) -> None:
        """Persist a record."""

    # Chain reads
    @abstractmethod
    async def get_tail(self, chain_id: str) -> ChainTail:
        """Sequence and hash of the last stored record (empty tail for a new chain)."""

    @abstractmethod
    async def get_range(self, chain_id: str, from_sequence: int, to_sequence: int) -> list[AuditRecord]:
        """Records with from_sequence <= sequence <= to_sequence, ascending."""

    @abstractmethod
    async def get_record(self, chain_id: str, sequence: int) -> AuditRecord | None:
        """A single record by sequence."""

    @abstractmethod
    async def get_by_event_id(self, chain_id: str, event_id: str) -> AuditRecord | None:
        """A single record by idempotency key."""

    @abstractmethod
    async def list_chains(self) -> list[str]:
        """Every chain id that has at least one record."""

    # Non-authoritative lookups
    @abstractmethod
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
        """Records matching every given filter, ascending by sequence.

        ``start`` is inclusive, ``end`` is exclusive.
        """

    @abstractmethod
    async def time_bounds(self, chain_id: str) -> tuple[datetime, datetime] | None:
        """Earliest and latest record timestamps, or None for an empty chain."""

    # Archival markers
    @abstractmethod
    async def insert_archive_marker(self, marker: PartitionArchive) -> None:
        """Record that a partition has been copied to archival storage."""

    @abstractmethod
    async def get_archive_markers(self, chain_id: str) -> list[PartitionArchive]:
        """Archive markers for a chain, oldest partition first."""
