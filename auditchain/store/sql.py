"""SQLAlchemy implementation of AuditStore.

Works on PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.
The unique constraint on (chain_id, sequence) is the store-level
compare-and-set that keeps concurrent writers from forking a chain.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.exceptions import DuplicateEvent, StoreError, TailDivergence, ValidationError
from auditchain.models.audit import AuditRecordRow, PartitionArchiveRow
from auditchain.schemas.records import Actor, AuditRecord, ChainTail, PartitionArchive
from auditchain.store.base import AuditStore

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class SqlAuditStore(AuditStore):
    """AuditStore backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Write path ───────────────────────────────────────────────────

    async def insert(self, record: AuditRecord) -> None:
        row = self._record_to_row(record)
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
        except IntegrityError as e:
            existing = await self.get_by_event_id(record.chain_id, record.event_id)
            if existing is not None:
                raise DuplicateEvent(existing) from e
            logger.warning(
                "Sequence conflict on chain %s at sequence %d",
                record.chain_id,
                record.sequence,
            )
            raise TailDivergence(record.chain_id, f"sequence {record.sequence} is already taken") from e
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to insert audit record chain=%s seq=%d: %s", record.chain_id, record.sequence, e)
            raise StoreError(f"Failed to insert audit record: {e}") from e
        logger.debug("Inserted audit record chain=%s seq=%d", record.chain_id, record.sequence)

    # ── Chain reads ──────────────────────────────────────────────────

    async def get_tail(self, chain_id: str) -> ChainTail:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(AuditRecordRow.sequence, AuditRecordRow.record_hash)
                    .where(AuditRecordRow.chain_id == chain_id)
                    .order_by(AuditRecordRow.sequence.desc())
                    .limit(1)
                )
                row = result.first()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to read tail of chain %s: %s", chain_id, e)
            raise StoreError(f"Failed to read chain tail: {e}") from e
        if row is None:
            return ChainTail.empty(chain_id)
        return ChainTail(chain_id=chain_id, sequence=row[0], record_hash=row[1])

    async def get_range(self, chain_id: str, from_sequence: int, to_sequence: int) -> list[AuditRecord]:
        return await self._select_records(
            select(AuditRecordRow)
            .where(
                AuditRecordRow.chain_id == chain_id,
                AuditRecordRow.sequence >= from_sequence,
                AuditRecordRow.sequence <= to_sequence,
            )
            .order_by(AuditRecordRow.sequence.asc())
        )

    async def get_record(self, chain_id: str, sequence: int) -> AuditRecord | None:
        records = await self._select_records(
            select(AuditRecordRow).where(
                AuditRecordRow.chain_id == chain_id,
                AuditRecordRow.sequence == sequence,
            )
        )
        return records[0] if records else None

    async def get_by_event_id(self, chain_id: str, event_id: str) -> AuditRecord | None:
        records = await self._select_records(
            select(AuditRecordRow).where(
                AuditRecordRow.chain_id == chain_id,
                AuditRecordRow.event_id == event_id,
            )
        )
        return records[0] if records else None

    async def list_chains(self) -> list[str]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(AuditRecordRow.chain_id).distinct().order_by(AuditRecordRow.chain_id)
                )
                return [row[0] for row in result.all()]
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to list chains: %s", e)
            raise StoreError(f"Failed to list chains: {e}") from e

    # ── Lookups ──────────────────────────────────────────────────────

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
        query = select(AuditRecordRow).where(AuditRecordRow.chain_id == chain_id)
        if entity_type is not None:
            query = query.where(AuditRecordRow.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(AuditRecordRow.entity_id == entity_id)
        if actor_id is not None:
            query = query.where(AuditRecordRow.actor_id == actor_id)
        if start is not None:
            query = query.where(AuditRecordRow.timestamp >= _utc(start))
        if end is not None:
            query = query.where(AuditRecordRow.timestamp < _utc(end))
        return await self._select_records(query.order_by(AuditRecordRow.sequence.asc()).limit(limit))

    async def time_bounds(self, chain_id: str) -> tuple[datetime, datetime] | None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(func.min(AuditRecordRow.timestamp), func.max(AuditRecordRow.timestamp))
                    .where(AuditRecordRow.chain_id == chain_id)
                )
                first, last = result.one()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to read time bounds of chain %s: %s", chain_id, e)
            raise StoreError(f"Failed to read time bounds: {e}") from e
        if first is None:
            return None
        return _utc(first), _utc(last)

    # ── Archive markers ──────────────────────────────────────────────

    async def insert_archive_marker(self, marker: PartitionArchive) -> None:
        row = PartitionArchiveRow(
            chain_id=marker.chain_id,
            partition_id=marker.partition_id,
            period_start=marker.period_start,
            period_end=marker.period_end,
            record_count=marker.record_count,
            first_sequence=marker.first_sequence,
            last_sequence=marker.last_sequence,
            content_digest=marker.content_digest,
            location=marker.location,
            archived_at=marker.archived_at,
        )
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
        except IntegrityError as e:
            raise ValidationError(
                f"Partition {marker.partition_id} of chain {marker.chain_id} is already archived",
                field="partition_id",
            ) from e
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to insert archive marker %s/%s: %s", marker.chain_id, marker.partition_id, e)
            raise StoreError(f"Failed to insert archive marker: {e}") from e

    async def get_archive_markers(self, chain_id: str) -> list[PartitionArchive]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(PartitionArchiveRow)
                    .where(PartitionArchiveRow.chain_id == chain_id)
                    .order_by(PartitionArchiveRow.period_start.asc())
                )
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to read archive markers of chain %s: %s", chain_id, e)
            raise StoreError(f"Failed to read archive markers: {e}") from e
        return [
            PartitionArchive(
                chain_id=row.chain_id,
                partition_id=row.partition_id,
                period_start=_utc(row.period_start),
                period_end=_utc(row.period_end),
                record_count=row.record_count,
                first_sequence=row.first_sequence,
                last_sequence=row.last_sequence,
                content_digest=row.content_digest,
                location=row.location,
                archived_at=_utc(row.archived_at),
            )
            for row in rows
        ]

    # ── Helpers ──────────────────────────────────────────────────────

    async def _select_records(self, query) -> list[AuditRecord]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to read audit records: %s", e)
            raise StoreError(f"Failed to read audit records: {e}") from e
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _record_to_row(record: AuditRecord) -> AuditRecordRow:
        return AuditRecordRow(
            chain_id=record.chain_id,
            sequence=record.sequence,
            event_id=record.event_id,
            schema_version=record.schema_version,
            timestamp=record.timestamp,
            actor_id=record.actor.id,
            actor_session_id=record.actor.session_id,
            actor_source_address=record.actor.source_address,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            before_state=record.before_state,
            after_state=record.after_state,
            changed_fields=list(record.changed_fields),
            record_metadata=record.metadata,
            previous_hash=record.previous_hash,
            record_hash=record.record_hash,
        )

    @staticmethod
    def _row_to_record(row: AuditRecordRow) -> AuditRecord:
        return AuditRecord(
            schema_version=row.schema_version,
            chain_id=row.chain_id,
            event_id=row.event_id,
            sequence=row.sequence,
            timestamp=_utc(row.timestamp),
            actor=Actor(
                id=row.actor_id,
                session_id=row.actor_session_id,
                source_address=row.actor_source_address,
            ),
            action=row.action,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            before_state=row.before_state,
            after_state=row.after_state,
            changed_fields=list(row.changed_fields or []),
            metadata=row.record_metadata or {},
            previous_hash=row.previous_hash,
            record_hash=row.record_hash,
        )
