"""SQLAlchemy ORM models for auditchain.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from auditchain.models.audit import AuditRecordRow, PartitionArchiveRow
from auditchain.models.base import Base

__all__ = [
    "Base",
    "AuditRecordRow",
    "PartitionArchiveRow",
]
