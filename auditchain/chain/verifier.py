"""Chain verifier — replays a range of a chain and reports every broken link.

Read-only and safe to run while appends continue: the range end defaults
to the tail observed when verification starts, and persisted records
never change, so the walk always sees a consistent prefix.

Each record is linked against the *recomputed* hash of its predecessor,
so editing a record breaks both its own hash and its successor's link,
whether or not the stored record_hash was edited too.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from auditchain.chain.builder import diff_fields
from auditchain.chain.hasher import CanonicalEncodingError, ChainHasher
from auditchain.config import settings
from auditchain.events import Emitter, emit
from auditchain.exceptions import ChainIntegrityError, ValidationError
from auditchain.schemas.events import ChainEvent, EventType
from auditchain.schemas.records import (
    ZERO_HASH,
    AuditRecord,
    BreakKind,
    BrokenLink,
    VerificationReport,
)
from auditchain.store.base import AuditStore

logger = logging.getLogger(__name__)


class ChainVerifier:
    """Walks chains in sequence order and checks every link."""

    def __init__(
        self,
        store: AuditStore,
        hasher: ChainHasher | None = None,
        *,
        batch_size: int | None = None,
        emitter: Emitter | None = None,
    ) -> None:
        self._store = store
        self._hasher = hasher or ChainHasher(settings.chain.hash_algorithm)
        self._batch_size = batch_size or settings.chain.verify_batch_size
        self._emit = emitter or emit

    @property
    def hasher(self) -> ChainHasher:
        return self._hasher

    async def verify(
        self,
        chain_id: str,
        from_sequence: int | None = None,
        to_sequence: int | None = None,
    ) -> VerificationReport:
        """Verify ``from_sequence..to_sequence`` (inclusive) of a chain.

        Defaults to the whole chain up to the current tail; an explicit end
        past the tail is capped at the tail. Never raises on integrity
        failures; every break is listed in the report.
        """
        start = 1 if from_sequence is None else from_sequence
        if start < 1:
            raise ValidationError("from_sequence must be at least 1", field="from_sequence")
        if to_sequence is not None and to_sequence < start - 1:
            raise ValidationError("to_sequence must not precede from_sequence", field="to_sequence")
        tail_sequence = (await self._store.get_tail(chain_id)).sequence
        # Nothing exists past the tail; a range ending beyond it stops there
        end = tail_sequence if to_sequence is None else max(min(to_sequence, tail_sequence), start - 1)

        breaks: list[BrokenLink] = []
        prev_sequence = start - 1
        prev_hash: str | None = ZERO_HASH

        if start > 1:
            anchor = await self._store.get_record(chain_id, start - 1)
            if anchor is None:
                prev_hash = None
                breaks.append(BrokenLink(
                    sequence=start - 1,
                    kind=BreakKind.SEQUENCE_GAP,
                    detail="anchor record preceding the range is missing",
                ))
            else:
                prev_hash = self._recompute(anchor)

        checked = 0
        cursor = start
        while cursor <= end:
            page_end = min(cursor + self._batch_size - 1, end)
            for record in await self._store.get_range(chain_id, cursor, page_end):
                recomputed = self._check_record(record, prev_sequence, prev_hash, breaks)
                prev_sequence = record.sequence
                prev_hash = recomputed
                checked += 1
            cursor = page_end + 1

        report = VerificationReport(
            chain_id=chain_id,
            from_sequence=start,
            to_sequence=end,
            checked_count=checked,
            broken_links=breaks,
            algorithm=self._hasher.algorithm,
            verified_at=datetime.now(UTC),
        )
        await self._publish(report)
        return report

    async def verify_or_raise(
        self,
        chain_id: str,
        from_sequence: int | None = None,
        to_sequence: int | None = None,
    ) -> VerificationReport:
        """Like verify(), but raise ChainIntegrityError when any link is broken."""
        report = await self.verify(chain_id, from_sequence, to_sequence)
        if not report.ok:
            raise ChainIntegrityError(report)
        return report

    def _recompute(self, record: AuditRecord) -> str | None:
        try:
            return self._hasher.rehash(record)
        except CanonicalEncodingError:
            return None

    def _check_record(
        self,
        record: AuditRecord,
        prev_sequence: int,
        prev_hash: str | None,
        breaks: list[BrokenLink],
    ) -> str | None:
        """Append this record's breaks to ``breaks``; return its recomputed hash."""
        seq = record.sequence

        if seq != prev_sequence + 1:
            breaks.append(BrokenLink(
                sequence=seq,
                kind=BreakKind.SEQUENCE_GAP,
                expected=prev_sequence + 1,
                actual=seq,
                detail=f"expected sequence {prev_sequence + 1}",
            ))

        recomputed = self._recompute(record)
        if recomputed is None:
            breaks.append(BrokenLink(
                sequence=seq,
                kind=BreakKind.HASH_MISMATCH,
                actual=record.record_hash,
                detail="record contains values with no canonical encoding",
            ))
        elif recomputed != record.record_hash:
            breaks.append(BrokenLink(
                sequence=seq,
                kind=BreakKind.HASH_MISMATCH,
                expected=recomputed,
                actual=record.record_hash,
                detail="record contents do not match its stored hash",
            ))

        if prev_hash is not None and record.previous_hash != prev_hash:
            breaks.append(BrokenLink(
                sequence=seq,
                kind=BreakKind.PREVIOUS_HASH_MISMATCH,
                expected=prev_hash,
                actual=record.previous_hash,
                detail="previous_hash does not match the preceding record",
            ))

        derived = diff_fields(record.before_state, record.after_state)
        if derived != list(record.changed_fields):
            breaks.append(BrokenLink(
                sequence=seq,
                kind=BreakKind.CHANGED_FIELDS_MISMATCH,
                expected=derived,
                actual=list(record.changed_fields),
                detail="changed_fields does not match the snapshots",
            ))

        return recomputed

    async def _publish(self, report: VerificationReport) -> None:
        if report.ok:
            logger.info(
                "Chain %s verified: %d record(s) in %d..%d intact",
                report.chain_id,
                report.checked_count,
                report.from_sequence,
                report.to_sequence,
            )
            await self._emit(ChainEvent(
                event_type=EventType.CHAIN_VERIFIED,
                chain_id=report.chain_id,
                data={"checked_count": report.checked_count, "to_sequence": report.to_sequence},
                source_module="chain.verifier",
            ))
            return

        for link in report.broken_links:
            logger.critical(
                "Integrity break on chain %s at sequence %d: %s (%s)",
                report.chain_id,
                link.sequence,
                link.kind.value,
                link.detail,
            )
        await self._emit(ChainEvent(
            event_type=EventType.INTEGRITY_FAILED,
            chain_id=report.chain_id,
            sequence=report.broken_links[0].sequence,
            data={
                "checked_count": report.checked_count,
                "broken_links": len(report.broken_links),
                "kinds": sorted({link.kind.value for link in report.broken_links}),
            },
            source_module="chain.verifier",
        ))
