"""Scheduled maintenance — verification sweep and partition archival.

Both jobs are safe to run on every tick: verification is read-only, and
archival skips partitions that already carry an archive marker. A failure
on one chain is logged and never stops the rest of the sweep.

The verification sweep runs from the FastAPI lifespan every
AUDIT_VERIFY_INTERVAL_MINUTES (0 disables it).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from auditchain.events import emit
from auditchain.exceptions import AuditChainError
from auditchain.schemas.events import ChainEvent, EventType
from auditchain.services import Services, get_services

logger = logging.getLogger(__name__)


async def run_verification_sweep(services: Services | None = None) -> dict[str, int]:
    """Verify every chain end to end. Returns a summary dict."""
    services = services or get_services()
    summary: dict[str, int] = {
        "chains_checked": 0,
        "records_checked": 0,
        "chains_broken": 0,
        "chains_failed": 0,
    }

    try:
        chains = await services.store.list_chains()
    except AuditChainError:
        logger.exception("Verification sweep could not list chains")
        return summary

    for chain_id in chains:
        try:
            report = await services.verifier.verify(chain_id)
        except AuditChainError:
            logger.exception("Verification of chain %s failed", chain_id)
            summary["chains_failed"] += 1
            continue
        summary["chains_checked"] += 1
        summary["records_checked"] += report.checked_count
        if not report.ok:
            summary["chains_broken"] += 1

    await emit(ChainEvent(
        event_type=EventType.SYSTEM_MAINTENANCE,
        data={"action": "verification_sweep", **summary},
        source_module="jobs",
    ))

    log = logger.critical if summary["chains_broken"] else logger.info
    log(
        "Verification sweep complete: chains=%d records=%d broken=%d failed=%d",
        summary["chains_checked"],
        summary["records_checked"],
        summary["chains_broken"],
        summary["chains_failed"],
    )
    return summary


async def run_archival(now: datetime | None = None, services: Services | None = None) -> dict[str, int]:
    """Archive every eligible partition of every chain. Returns a summary dict."""
    services = services or get_services()
    now = now or datetime.now(UTC)
    summary: dict[str, int] = {
        "partitions_archived": 0,
        "records_archived": 0,
        "partitions_failed": 0,
    }

    try:
        chains = await services.store.list_chains()
    except AuditChainError:
        logger.exception("Archival job could not list chains")
        return summary

    for chain_id in chains:
        try:
            eligible = await services.partitions.archive_eligible_partitions(chain_id, now)
        except AuditChainError:
            logger.exception("Could not list eligible partitions of chain %s", chain_id)
            summary["partitions_failed"] += 1
            continue

        for partition_id in eligible:
            try:
                marker = await services.partitions.archive_partition(chain_id, partition_id, services.sink, now)
            except (AuditChainError, OSError):
                logger.exception("Archival of %s/%s failed", chain_id, partition_id)
                summary["partitions_failed"] += 1
                continue
            summary["partitions_archived"] += 1
            summary["records_archived"] += marker.record_count

    await emit(ChainEvent(
        event_type=EventType.SYSTEM_MAINTENANCE,
        data={"action": "partition_archival", **summary},
        source_module="jobs",
    ))

    logger.info(
        "Archival job complete: partitions=%d records=%d failed=%d",
        summary["partitions_archived"],
        summary["records_archived"],
        summary["partitions_failed"],
    )
    return summary


async def verification_loop(interval_minutes: int, services: Services | None = None) -> None:
    """Run the verification sweep forever, sleeping ``interval_minutes`` between runs."""
    while True:
        await asyncio.sleep(interval_minutes * 60)
        await run_verification_sweep(services)
