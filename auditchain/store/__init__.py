"""Append-only stores for audit chains."""

from auditchain.store.base import AuditStore
from auditchain.store.inmemory import InMemoryAuditStore
from auditchain.store.sql import SqlAuditStore

__all__ = [
    "AuditStore",
    "InMemoryAuditStore",
    "SqlAuditStore",
]
