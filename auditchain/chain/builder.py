"""Record builder — turns caller-supplied fields into a normalized CandidateRecord.

Validates identity and required fields, applies the sensitive-data policy
to metadata, normalizes snapshot values to JSON-native form and derives
changed_fields. Sequence and hashes are assigned later by the append engine.

Hashes are computed over exactly what the builder receives. Redaction or
encryption of snapshot contents is the caller's job and must happen before
build() is called.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from auditchain.chain.policy import SensitiveDataPolicy
from auditchain.config import settings
from auditchain.exceptions import ValidationError
from auditchain.schemas.records import SCHEMA_VERSION, Actor, CandidateRecord

logger = logging.getLogger(__name__)

_MAX_IDENTIFIER_LENGTH = 255


def normalize_json(value: Any, path: str = "value") -> Any:
    """Convert a value to JSON-native form (None, bool, int, float, str, list, dict).

    Raises ValidationError for values with no stable JSON representation.
    """
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValidationError(f"{path}: non-finite float is not allowed", field=path)
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError(f"{path}: non-finite decimal is not allowed", field=path)
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValidationError(f"{path}: naive datetime is not allowed", field=path)
        return value.astimezone(UTC).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [normalize_json(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"{path}: keys must be strings, got {type(key).__name__}", field=path)
            out[key] = normalize_json(item, f"{path}.{key}")
        return out
    raise ValidationError(f"{path}: unsupported type {type(value).__name__}", field=path)


def diff_fields(
    before_state: Mapping[str, Any] | None,
    after_state: Mapping[str, Any] | None,
) -> list[str]:
    """Sorted keys present in either snapshot whose values differ.

    A key present on only one side counts as changed.
    """
    before = before_state or {}
    after = after_state or {}
    changed = {
        key
        for key in set(before) | set(after)
        if key not in before or key not in after or before[key] != after[key]
    }
    return sorted(changed)


class RecordBuilder:
    """Builds CandidateRecords ready for the append engine."""

    def __init__(
        self,
        policy: SensitiveDataPolicy | None = None,
        denied_actor_ids: Iterable[str] | None = None,
    ) -> None:
        self._policy = policy or SensitiveDataPolicy(settings.chain.extra_prohibited_keys)
        denied = settings.chain.denied_actors if denied_actor_ids is None else denied_actor_ids
        self._denied_actors = frozenset(a.strip().lower() for a in denied)

    def build(
        self,
        chain_id: str,
        actor: Actor | Mapping[str, Any] | str,
        action: str,
        entity_type: str,
        entity_id: str | int | uuid.UUID,
        before_state: Mapping[str, Any] | None = None,
        after_state: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        event_id: str | uuid.UUID | None = None,
        timestamp: datetime | None = None,
    ) -> CandidateRecord:
        """Validate and normalize a single audit entry.

        Args:
            chain_id: Chain the record will be appended to.
            actor: Principal performing the action (Actor, dict or bare id).
            action: What happened (e.g. "permission.granted").
            entity_type: Kind of entity affected.
            entity_id: Identifier of the affected entity.
            before_state: Full snapshot before the action, if any.
            after_state: Full snapshot after the action, if any.
            metadata: Extra context; checked against the sensitive-data policy.
            event_id: Idempotency key. Generated when omitted.
            timestamp: Capture time (timezone-aware). Defaults to now (UTC).

        Returns:
            CandidateRecord with every field set except sequence and hashes.

        Raises:
            ValidationError: on missing fields, unattributable actors,
                prohibited metadata or values without a JSON form.
        """
        resolved_actor = self._resolve_actor(actor)

        chain_id = self._require("chain_id", chain_id)
        action = self._require("action", action)
        entity_type = self._require("entity_type", entity_type)
        entity_id = self._require("entity_id", str(entity_id) if entity_id is not None else "")
        resolved_event_id = self._require("event_id", str(event_id)) if event_id is not None else str(uuid.uuid4())

        if timestamp is None:
            timestamp = datetime.now(UTC)
        elif timestamp.tzinfo is None:
            raise ValidationError("timestamp must be timezone-aware", field="timestamp")
        else:
            timestamp = timestamp.astimezone(UTC)

        before = self._snapshot("before_state", before_state)
        after = self._snapshot("after_state", after_state)

        meta = normalize_json(dict(metadata or {}), "metadata")
        violations = self._policy.scan(meta)
        if violations:
            paths = ", ".join(f"{v.path} ({v.reason})" for v in violations)
            logger.warning(
                "Rejected audit record for chain %s: sensitive metadata at %s",
                chain_id,
                ", ".join(v.path for v in violations),
            )
            raise ValidationError(f"Prohibited sensitive data in metadata: {paths}", field="metadata")

        return CandidateRecord(
            schema_version=SCHEMA_VERSION,
            chain_id=chain_id,
            event_id=resolved_event_id,
            timestamp=timestamp,
            actor=resolved_actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before_state=before,
            after_state=after,
            changed_fields=diff_fields(before, after),
            metadata=meta,
        )

    def _resolve_actor(self, actor: Actor | Mapping[str, Any] | str) -> Actor:
        if isinstance(actor, str):
            actor = Actor(id=actor)
        elif isinstance(actor, Mapping):
            try:
                actor = Actor.model_validate(dict(actor))
            except ValueError as exc:
                raise ValidationError(f"Invalid actor: {exc}", field="actor") from exc
        elif not isinstance(actor, Actor):
            raise ValidationError("actor must be an Actor, a mapping or an id string", field="actor")

        actor_id = actor.id.strip()
        if not actor_id:
            raise ValidationError("actor.id is required", field="actor")
        if actor_id.lower() in self._denied_actors:
            raise ValidationError(
                f"actor.id '{actor_id}' is a shared or anonymous identity",
                field="actor",
            )
        for name, value in (
            ("id", actor.id),
            ("session_id", actor.session_id),
            ("source_address", actor.source_address),
        ):
            if value is not None and len(value) > _MAX_IDENTIFIER_LENGTH:
                raise ValidationError(
                    f"actor.{name} exceeds {_MAX_IDENTIFIER_LENGTH} characters",
                    field="actor",
                )
        return actor

    @staticmethod
    def _require(name: str, value: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required", field=name)
        if len(value) > _MAX_IDENTIFIER_LENGTH:
            raise ValidationError(f"{name} exceeds {_MAX_IDENTIFIER_LENGTH} characters", field=name)
        return value

    @staticmethod
    def _snapshot(name: str, state: Mapping[str, Any] | None) -> dict[str, Any] | None:
        if state is None:
            return None
        if not isinstance(state, Mapping):
            raise ValidationError(f"{name} must be a mapping", field=name)
        return normalize_json(dict(state), name)
