"""ChainEvent schema — operational events emitted by the audit core.

The write path, verifier and jobs emit ChainEvents. Subscribers (the
integrity alert logger, external alerting) consume them asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Write path
    RECORD_APPENDED = "record.appended"
    RECORD_DUPLICATE = "record.duplicate"
    TAIL_REPAIRED = "chain.tail_repaired"
    CHAIN_HALTED = "chain.halted"
    CHAIN_RESUMED = "chain.resumed"

    # Verification
    CHAIN_VERIFIED = "chain.verified"
    INTEGRITY_FAILED = "chain.integrity_failed"

    # Retention
    PARTITION_ARCHIVED = "partition.archived"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_MAINTENANCE = "system.maintenance"


class ChainEvent(BaseModel):
    """Operational event about a chain. Immutable once created."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    chain_id: str | None = None
    sequence: int | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
