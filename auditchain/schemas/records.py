"""Audit record schemas — the immutable unit of the log and its satellites.

CandidateRecord is what the builder produces; AuditRecord is what the
append engine persists once sequence, previous_hash and record_hash are
assigned. Both are frozen.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

SCHEMA_VERSION = 1
ZERO_HASH = "0" * 64


class Actor(BaseModel):
    """Principal performing the action. Never a shared or anonymous identity."""

    id: str = Field(..., description="User id or service principal")
    session_id: str | None = Field(default=None, description="Authenticated session")
    source_address: str | None = Field(default=None, description="Client IP or host")

    model_config = {"frozen": True}


class CandidateRecord(BaseModel):
    """A normalized audit entry that has not been placed on a chain yet."""

    schema_version: int = SCHEMA_VERSION
    chain_id: str
    event_id: str
    timestamp: datetime
    actor: Actor
    action: str
    entity_type: str
    entity_id: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    changed_fields: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def same_payload(self, other: CandidateRecord) -> bool:
        """True when ``other`` describes the same logical event (timestamps ignored)."""
        fields = ("actor", "action", "entity_type", "entity_id", "before_state", "after_state", "metadata")
        return all(getattr(self, f) == getattr(other, f) for f in fields)


class AuditRecord(CandidateRecord):
    """Persisted, hash-linked audit record."""

    sequence: int = Field(..., ge=1)
    previous_hash: str
    record_hash: str


class ChainTail(BaseModel):
    """Most recently appended record's sequence and hash for a chain."""

    chain_id: str
    sequence: int = 0
    record_hash: str = ZERO_HASH

    model_config = {"frozen": True}

    @classmethod
    def empty(cls, chain_id: str) -> ChainTail:
        return cls(chain_id=chain_id)

    @classmethod
    def of(cls, record: AuditRecord) -> ChainTail:
        return cls(chain_id=record.chain_id, sequence=record.sequence, record_hash=record.record_hash)


class BreakKind(str, Enum):
    """Categories of broken links detected by the verifier."""

    HASH_MISMATCH = "hash_mismatch"
    PREVIOUS_HASH_MISMATCH = "previous_hash_mismatch"
    SEQUENCE_GAP = "sequence_gap"
    CHANGED_FIELDS_MISMATCH = "changed_fields_mismatch"


class BrokenLink(BaseModel):
    """One integrity violation found at a given sequence."""

    sequence: int
    kind: BreakKind
    expected: Any = None
    actual: Any = None
    detail: str = ""

    model_config = {"frozen": True}


class VerificationReport(BaseModel):
    """Result of walking a range of a chain."""

    chain_id: str
    from_sequence: int
    to_sequence: int
    checked_count: int = 0
    broken_links: list[BrokenLink] = Field(default_factory=list)
    algorithm: str
    verified_at: datetime

    @property
    def ok(self) -> bool:
        return not self.broken_links


class PartitionArchive(BaseModel):
    """Marker written after a partition has been copied to archival storage."""

    chain_id: str
    partition_id: str
    period_start: datetime
    period_end: datetime
    record_count: int
    first_sequence: int
    last_sequence: int
    content_digest: str
    location: str
    archived_at: datetime

    model_config = {"frozen": True}
