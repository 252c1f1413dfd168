"""Partition manager — time-bounded partitions and copy-then-mark archival.

A chain is split into calendar partitions by record timestamp (UTC):
``YYYY`` per year or ``YYYY-MM`` per month. A partition becomes eligible
for archival only once the mandatory retention period has elapsed both
for the partition's end boundary and for its latest record.

Archival copies a partition to an ArchiveSink, reads the copy back and
compares digests, then records a PartitionArchive marker. Records are
never deleted or rewritten; removing fully-expired partitions is a
separate, explicitly authorized operation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime

from auditchain.chain.hasher import ChainHasher
from auditchain.chain.verifier import ChainVerifier
from auditchain.config import settings
from auditchain.events import Emitter, emit
from auditchain.exceptions import ChainIntegrityError, StoreError, ValidationError
from auditchain.retention.sinks import ArchiveSink
from auditchain.schemas.events import ChainEvent, EventType
from auditchain.schemas.records import AuditRecord, PartitionArchive
from auditchain.store.base import AuditStore

logger = logging.getLogger(__name__)

_YEAR_ID = re.compile(r"^(\d{4})$")
_MONTH_ID = re.compile(r"^(\d{4})-(\d{2})$")


def add_years(moment: datetime, years: int) -> datetime:
    """Shift by whole calendar years. Feb 29 maps to Feb 28 in non-leap years."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


@dataclass(frozen=True)
class Partition:
    """A half-open time range ``[period_start, period_end)`` of one chain."""

    partition_id: str
    period_start: datetime
    period_end: datetime


def partition_for(timestamp: datetime, granularity: str) -> Partition:
    """The partition containing ``timestamp``."""
    ts = timestamp.astimezone(UTC)
    if granularity == "year":
        return Partition(
            partition_id=f"{ts.year:04d}",
            period_start=datetime(ts.year, 1, 1, tzinfo=UTC),
            period_end=datetime(ts.year + 1, 1, 1, tzinfo=UTC),
        )
    if granularity == "month":
        if ts.month == 12:
            end = datetime(ts.year + 1, 1, 1, tzinfo=UTC)
        else:
            end = datetime(ts.year, ts.month + 1, 1, tzinfo=UTC)
        return Partition(
            partition_id=f"{ts.year:04d}-{ts.month:02d}",
            period_start=datetime(ts.year, ts.month, 1, tzinfo=UTC),
            period_end=end,
        )
    raise ValueError(f"Unknown partition granularity: {granularity}")


def parse_partition_id(partition_id: str, granularity: str) -> Partition:
    """Inverse of partition_for(...).partition_id. Raises ValidationError on bad ids."""
    pattern = _YEAR_ID if granularity == "year" else _MONTH_ID
    match = pattern.match(partition_id)
    if match is None:
        raise ValidationError(
            f"Invalid {granularity} partition id: {partition_id!r}",
            field="partition_id",
        )
    year = int(match.group(1))
    month = int(match.group(2)) if granularity == "month" else 1
    if year < 1 or not 1 <= month <= 12:
        raise ValidationError(f"Invalid {granularity} partition id: {partition_id!r}", field="partition_id")
    return partition_for(datetime(year, month, 1, tzinfo=UTC), granularity)


def _aware(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        raise ValidationError("now must be timezone-aware", field="now")
    return now.astimezone(UTC)


class PartitionManager:
    """Finds archive-eligible partitions and archives them."""

    def __init__(
        self,
        store: AuditStore,
        hasher: ChainHasher | None = None,
        verifier: ChainVerifier | None = None,
        *,
        retention_years: int | None = None,
        granularity: str | None = None,
        emitter: Emitter | None = None,
    ) -> None:
        cfg = settings.retention
        self._store = store
        self._hasher = hasher or ChainHasher(settings.chain.hash_algorithm)
        self._verifier = verifier or ChainVerifier(store, self._hasher, emitter=emitter)
        self._retention_years = cfg.retention_years if retention_years is None else retention_years
        self._granularity = granularity or cfg.partition_granularity
        self._emit = emitter or emit

    @property
    def granularity(self) -> str:
        return self._granularity

    @property
    def retention_years(self) -> int:
        return self._retention_years

    def partition_id_for(self, timestamp: datetime) -> str:
        return partition_for(timestamp, self._granularity).partition_id

    def is_eligible(self, partition: Partition, latest_timestamp: datetime, now: datetime) -> bool:
        """Retention has elapsed for the partition boundary and its latest record."""
        return (
            add_years(partition.period_end, self._retention_years) <= now
            and add_years(latest_timestamp, self._retention_years) <= now
        )

    async def archive_eligible_partitions(self, chain_id: str, now: datetime | None = None) -> list[str]:
        """Ids of partitions that may be archived at ``now``, oldest first.

        Already-archived and empty partitions are skipped. The partition
        containing ``now`` can never qualify.
        """
        now = _aware(now)
        bounds = await self._store.time_bounds(chain_id)
        if bounds is None:
            return []
        earliest, latest = bounds
        archived = {m.partition_id for m in await self._store.get_archive_markers(chain_id)}

        eligible: list[str] = []
        partition = partition_for(earliest, self._granularity)
        last_start = partition_for(min(latest, now), self._granularity).period_start
        while partition.period_start <= last_start:
            # Later partitions end later, so none of them can qualify either
            if add_years(partition.period_end, self._retention_years) > now:
                break
            if partition.partition_id not in archived:
                records = await self._partition_records(chain_id, partition)
                if records and self.is_eligible(partition, max(r.timestamp for r in records), now):
                    eligible.append(partition.partition_id)
            partition = partition_for(partition.period_end, self._granularity)
        return eligible

    async def archive_partition(
        self,
        chain_id: str,
        partition_id: str,
        sink: ArchiveSink,
        now: datetime | None = None,
    ) -> PartitionArchive:
        """Copy one eligible partition to ``sink`` and mark it archived.

        Raises:
            ValidationError: unknown, empty, already archived or not yet eligible.
            ChainIntegrityError: the partition's records fail verification.
            StoreError: the archived copy does not read back identically.
        """
        now = _aware(now)
        partition = parse_partition_id(partition_id, self._granularity)

        archived = {m.partition_id for m in await self._store.get_archive_markers(chain_id)}
        if partition.partition_id in archived:
            raise ValidationError(
                f"Partition {partition.partition_id} of chain {chain_id} is already archived",
                field="partition_id",
            )

        records = await self._partition_records(chain_id, partition)
        if not records:
            raise ValidationError(
                f"Partition {partition.partition_id} of chain {chain_id} has no records",
                field="partition_id",
            )
        if not self.is_eligible(partition, max(r.timestamp for r in records), now):
            raise ValidationError(
                f"Partition {partition.partition_id} of chain {chain_id} is still within "
                f"the {self._retention_years}-year retention period",
                field="partition_id",
            )

        first_sequence = records[0].sequence
        last_sequence = records[-1].sequence
        report = await self._verifier.verify(chain_id, first_sequence, last_sequence)
        if not report.ok:
            logger.critical(
                "Refusing to archive %s/%s: %d broken link(s)",
                chain_id,
                partition.partition_id,
                len(report.broken_links),
            )
            raise ChainIntegrityError(report)

        payload = b"".join(r.model_dump_json().encode("utf-8") + b"\n" for r in records)
        content_digest = self._hasher.digest(payload)
        location = await sink.locate(chain_id, partition.partition_id)
        if location is not None:
            # Copy left by an attempt that failed before marking; reused only if identical
            logger.warning(
                "Found existing archive copy of %s/%s at %s; checking it before marking",
                chain_id,
                partition.partition_id,
                location,
            )
        else:
            location = await sink.write(chain_id, partition.partition_id, payload)

        copy_digest = self._hasher.digest(await sink.read(location))
        if copy_digest != content_digest:
            logger.error(
                "Archive copy of %s/%s at %s does not match (expected %s, got %s)",
                chain_id,
                partition.partition_id,
                location,
                content_digest,
                copy_digest,
            )
            raise StoreError(f"Archive copy at {location} failed digest check")

        marker = PartitionArchive(
            chain_id=chain_id,
            partition_id=partition.partition_id,
            period_start=partition.period_start,
            period_end=partition.period_end,
            record_count=len(records),
            first_sequence=first_sequence,
            last_sequence=last_sequence,
            content_digest=content_digest,
            location=location,
            archived_at=now,
        )
        await self._store.insert_archive_marker(marker)

        logger.info(
            "Archived partition %s/%s: %d record(s), sequences %d..%d",
            chain_id,
            partition.partition_id,
            marker.record_count,
            first_sequence,
            last_sequence,
        )
        await self._emit(ChainEvent(
            event_type=EventType.PARTITION_ARCHIVED,
            chain_id=chain_id,
            data={
                "partition_id": marker.partition_id,
                "record_count": marker.record_count,
                "location": location,
            },
            source_module="retention.partitions",
        ))
        return marker

    async def _partition_records(self, chain_id: str, partition: Partition) -> list[AuditRecord]:
        tail = await self._store.get_tail(chain_id)
        if tail.sequence == 0:
            return []
        return await self._store.find(
            chain_id,
            start=partition.period_start,
            end=partition.period_end,
            limit=tail.sequence,
        )
