"""Audit chain schema — records, archive markers, append-only trigger.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


APPEND_ONLY_FUNCTION = """
CREATE OR REPLACE FUNCTION auditchain_reject_modification() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'audit table % is append-only: % rejected', TG_TABLE_NAME, TG_OP
        USING ERRCODE = 'insufficient_privilege';
END;
$$ LANGUAGE plpgsql;
"""


def _append_only_trigger(table: str) -> str:
    return (
        f"CREATE TRIGGER {table}_append_only "
        f"BEFORE UPDATE OR DELETE ON {table} "
        f"FOR EACH ROW EXECUTE FUNCTION auditchain_reject_modification();"
    )


def upgrade() -> None:
    op.create_table(
        "audit_records",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.String(255), nullable=False),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("actor_session_id", sa.String(255)),
        sa.Column("actor_source_address", sa.String(255)),
        sa.Column("action", sa.String(255), nullable=False),
        sa.Column("entity_type", sa.String(255), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("before_state", sa.JSON()),
        sa.Column("after_state", sa.JSON()),
        sa.Column("changed_fields", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.Column("record_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "sequence", name="uq_audit_records_chain_sequence"),
        sa.UniqueConstraint("chain_id", "event_id", name="uq_audit_records_chain_event"),
    )
    op.create_index("ix_audit_records_entity", "audit_records", ["chain_id", "entity_type", "entity_id"])
    op.create_index("ix_audit_records_actor", "audit_records", ["chain_id", "actor_id"])
    op.create_index("ix_audit_records_timestamp", "audit_records", ["chain_id", "timestamp"])

    op.create_table(
        "audit_partition_archives",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.String(255), nullable=False),
        sa.Column("partition_id", sa.String(16), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("first_sequence", sa.BigInteger(), nullable=False),
        sa.Column("last_sequence", sa.BigInteger(), nullable=False),
        sa.Column("content_digest", sa.String(64), nullable=False),
        sa.Column("location", sa.String(1024), nullable=False, comment="Archive URI or path"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "partition_id", name="uq_audit_partition_archives_chain_partition"),
    )
    op.create_index("ix_audit_partition_archives_chain_id", "audit_partition_archives", ["chain_id"])

    # ── Append-only enforcement ────────────────────────────────────────

    op.execute(APPEND_ONLY_FUNCTION)
    op.execute(_append_only_trigger("audit_records"))
    op.execute(_append_only_trigger("audit_partition_archives"))


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_partition_archives_append_only ON audit_partition_archives;")
    op.execute("DROP TRIGGER IF EXISTS audit_records_append_only ON audit_records;")
    op.execute("DROP FUNCTION IF EXISTS auditchain_reject_modification();")
    op.drop_table("audit_partition_archives")
    op.drop_table("audit_records")
