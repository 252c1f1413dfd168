"""Chain hasher — canonical serialization and record digests.

The byte encoding is defined here explicitly rather than delegated to
json.dumps, so any implementation that follows the same rules produces
the same hash for the same logical record:

    null      N
    bool      T | F
    int       I<decimal>;
    float     R<shortest round-trip repr>;        (NaN and infinities rejected)
    str       S<utf-8 byte length>:<utf-8 bytes>
    datetime  Z<YYYY-MM-DDTHH:MM:SS.ffffff>Z;     (converted to UTC)
    list      L<count>[<item>...]
    map       M<count>{<key><value>...}            (str keys, sorted by utf-8 bytes)

A record is encoded as F<count>{<name><value>...} over HASHED_FIELDS in
that fixed order. The digest algorithm is fixed per deployment and must
be known to verify historical chains.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from cryptography.hazmat.primitives import hashes

from auditchain.schemas.records import AuditRecord, CandidateRecord

# Order matters: changing it changes every hash. Bump SCHEMA_VERSION instead.
HASHED_FIELDS: tuple[str, ...] = (
    "schema_version",
    "chain_id",
    "event_id",
    "sequence",
    "timestamp",
    "actor",
    "action",
    "entity_type",
    "entity_id",
    "before_state",
    "after_state",
    "changed_fields",
    "metadata",
    "previous_hash",
)

_ALGORITHMS: dict[str, type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha3_256": hashes.SHA3_256,
    "sha512_256": hashes.SHA512_256,
}


class CanonicalEncodingError(ValueError):
    """A value has no canonical encoding."""


def _new_hash_algorithm(name: str) -> hashes.HashAlgorithm:
    if name == "blake2s_256":
        return hashes.BLAKE2s(32)
    try:
        return _ALGORITHMS[name]()
    except KeyError:
        msg = f"Unsupported hash algorithm: {name}"
        raise ValueError(msg) from None


def _encode_str(value: str) -> bytes:
    raw = value.encode("utf-8")
    return b"S" + str(len(raw)).encode("ascii") + b":" + raw


def encode_value(value: Any) -> bytes:
    """Encode a single value. Raises CanonicalEncodingError on unsupported types."""
    if value is None:
        return b"N"
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return b"T" if value else b"F"
    if isinstance(value, int):
        return b"I" + str(value).encode("ascii") + b";"
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            msg = f"Non-finite float has no canonical encoding: {value!r}"
            raise CanonicalEncodingError(msg)
        return b"R" + repr(value).encode("ascii") + b";"
    if isinstance(value, str):
        return _encode_str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            msg = "Naive datetime has no canonical encoding"
            raise CanonicalEncodingError(msg)
        stamp = value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")
        return b"Z" + stamp.encode("ascii") + b"Z;"
    if isinstance(value, (list, tuple)):
        parts = [b"L", str(len(value)).encode("ascii"), b"["]
        parts.extend(encode_value(item) for item in value)
        parts.append(b"]")
        return b"".join(parts)
    if isinstance(value, dict):
        items: list[tuple[bytes, Any]] = []
        for key, item in value.items():
            if not isinstance(key, str):
                msg = f"Map keys must be strings, got {type(key).__name__}"
                raise CanonicalEncodingError(msg)
            items.append((key.encode("utf-8"), item))
        items.sort(key=lambda pair: pair[0])
        parts = [b"M", str(len(items)).encode("ascii"), b"{"]
        for raw_key, item in items:
            parts.append(b"S" + str(len(raw_key)).encode("ascii") + b":" + raw_key)
            parts.append(encode_value(item))
        parts.append(b"}")
        return b"".join(parts)
    msg = f"Unsupported type for canonical encoding: {type(value).__name__}"
    raise CanonicalEncodingError(msg)


def record_fields(record: CandidateRecord, sequence: int, previous_hash: str) -> dict[str, Any]:
    """Collect the hashed field values of a record in HASHED_FIELDS order."""
    return {
        "schema_version": record.schema_version,
        "chain_id": record.chain_id,
        "event_id": record.event_id,
        "sequence": sequence,
        "timestamp": record.timestamp,
        "actor": {
            "id": record.actor.id,
            "session_id": record.actor.session_id,
            "source_address": record.actor.source_address,
        },
        "action": record.action,
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        "before_state": record.before_state,
        "after_state": record.after_state,
        "changed_fields": list(record.changed_fields),
        "metadata": record.metadata,
        "previous_hash": previous_hash,
    }


def canonical_bytes(record: CandidateRecord, sequence: int, previous_hash: str) -> bytes:
    """Canonical serialization of a record, excluding record_hash."""
    fields = record_fields(record, sequence, previous_hash)
    parts = [b"F", str(len(HASHED_FIELDS)).encode("ascii"), b"{"]
    for name in HASHED_FIELDS:
        parts.append(_encode_str(name))
        parts.append(encode_value(fields[name]))
    parts.append(b"}")
    return b"".join(parts)


class ChainHasher:
    """Computes record hashes with a fixed digest algorithm. Pure, no I/O."""

    def __init__(self, algorithm: str = "sha256") -> None:
        # Fail fast on unknown algorithms
        _new_hash_algorithm(algorithm)
        self._algorithm = algorithm

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def digest(self, data: bytes) -> str:
        """Hex digest of raw bytes with the configured algorithm."""
        h = hashes.Hash(_new_hash_algorithm(self._algorithm))
        h.update(data)
        return h.finalize().hex()

    def hash(self, record: CandidateRecord, sequence: int, previous_hash: str) -> str:
        """Hash a record placed at ``sequence`` after ``previous_hash``."""
        return self.digest(canonical_bytes(record, sequence, previous_hash))

    def rehash(self, record: AuditRecord) -> str:
        """Recompute a persisted record's hash from its own fields."""
        return self.hash(record, record.sequence, record.previous_hash)
