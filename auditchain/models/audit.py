"""Audit chain tables — hash-linked records and partition archive markers.

Both tables are append-only: no code path issues UPDATE or DELETE, and the
PostgreSQL migration installs a trigger that rejects them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.models.base import Base, InsertOnlyMixin


class AuditRecordRow(InsertOnlyMixin, Base):
    """One persisted AuditRecord."""

    __tablename__ = "audit_records"
    __table_args__ = (
        # The compare-and-set on the chain tail: two writers can never commit the same sequence.
        UniqueConstraint("chain_id", "sequence", name="uq_audit_records_chain_sequence"),
        UniqueConstraint("chain_id", "event_id", name="uq_audit_records_chain_event"),
        Index("ix_audit_records_entity", "chain_id", "entity_type", "entity_id"),
        Index("ix_audit_records_actor", "chain_id", "actor_id"),
        Index("ix_audit_records_timestamp", "chain_id", "timestamp"),
    )

    # Chain position
    chain_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Actor
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_session_id: Mapped[str | None] = mapped_column(String(255))
    actor_source_address: Mapped[str | None] = mapped_column(String(255))

    # What happened
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Snapshots: plain JSON (not JSONB), values come back exactly as written
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    changed_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    record_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False)

    # Links
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    record_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditRecordRow chain={self.chain_id} seq={self.sequence} action={self.action}>"


class PartitionArchiveRow(InsertOnlyMixin, Base):
    """Marker for a partition copied to archival storage."""

    __tablename__ = "audit_partition_archives"
    __table_args__ = (
        UniqueConstraint("chain_id", "partition_id", name="uq_audit_partition_archives_chain_partition"),
    )

    chain_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    partition_id: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    first_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    location: Mapped[str] = mapped_column(String(1024), nullable=False, comment="Archive URI or path")
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<PartitionArchiveRow chain={self.chain_id} partition={self.partition_id}>"
