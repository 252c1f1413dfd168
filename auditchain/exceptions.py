"""Error taxonomy for the audit chain.

Write-path errors (ValidationError, DuplicateEvent, AppendFailed,
TailDivergence) are raised by the builder, store and append engine.
ChainIntegrityError is raised only by the verifier.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auditchain.schemas.records import AuditRecord, VerificationReport


class AuditChainError(Exception):
    """Base class for every error raised by auditchain."""


class ValidationError(AuditChainError):
    """Malformed or policy-violating input. Rejected before hashing or storage."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DuplicateEvent(AuditChainError):
    """The event id was already appended to the chain.

    Not a failure: the append engine returns ``existing`` to the caller.
    """

    def __init__(self, existing: AuditRecord) -> None:
        super().__init__(
            f"Event {existing.event_id} already appended to chain {existing.chain_id} "
            f"at sequence {existing.sequence}"
        )
        self.existing = existing


class StoreError(AuditChainError):
    """Transient storage failure. Retried by the append engine."""


class AppendFailed(AuditChainError):
    """The append could not be completed. Safe to retry; the tail is unchanged."""

    def __init__(self, chain_id: str, message: str) -> None:
        super().__init__(f"Append to chain {chain_id} failed: {message}")
        self.chain_id = chain_id


class TailDivergence(AuditChainError):
    """The engine's tail and the store's last record disagree."""

    def __init__(self, chain_id: str, message: str) -> None:
        super().__init__(f"Tail divergence on chain {chain_id}: {message}")
        self.chain_id = chain_id


class ChainHalted(TailDivergence):
    """Tail repair failed; appends to the chain are refused until resumed manually."""


class ChainIntegrityError(AuditChainError):
    """Verification found broken links. Carries the full report."""

    def __init__(self, report: VerificationReport) -> None:
        super().__init__(
            f"Chain {report.chain_id} has {len(report.broken_links)} broken link(s) "
            f"in sequences {report.from_sequence}..{report.to_sequence}"
        )
        self.report = report
