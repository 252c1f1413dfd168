"""Audit chain HTTP API — append, verify, look up, inspect partitions.

Mounted at /api/v1. Every route requires HTTP Basic auth via verify_client.
"""
# ruff: noqa: B008

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from auditchain.api.auth import verify_client
from auditchain.exceptions import AppendFailed, StoreError, TailDivergence, ValidationError
from auditchain.schemas.records import Actor, AuditRecord, ChainTail, VerificationReport
from auditchain.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["audit"])


class AppendRequest(BaseModel):
    """Caller-supplied fields of one audit entry."""

    event_id: str | None = Field(default=None, description="Idempotency key; generated when omitted")
    actor: Actor | str
    action: str
    entity_type: str
    entity_id: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    timestamp: datetime | None = None


class EligiblePartitions(BaseModel):
    chain_id: str
    granularity: str
    retention_years: int
    partition_ids: list[str]


def _unavailable(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def _invalid(e: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"message": str(e), "field": e.field},
    )


# ── Write path ───────────────────────────────────────────────────────


@router.post("/chains/{chain_id}/records", response_model=AuditRecord, status_code=status.HTTP_201_CREATED)
async def append_record(
    chain_id: str,
    body: AppendRequest,
    response: Response,
    services: Services = Depends(get_services),
    client: str = Depends(verify_client),
) -> AuditRecord:
    """Append one record. 200 instead of 201 when the event id was already appended."""
    try:
        candidate = services.engine.builder.build(
            chain_id=chain_id,
            event_id=body.event_id,
            actor=body.actor,
            action=body.action,
            entity_type=body.entity_type,
            entity_id=body.entity_id,
            before_state=body.before_state,
            after_state=body.after_state,
            metadata=body.metadata,
            timestamp=body.timestamp,
        )
        record, created = await services.engine.append_with_status(candidate)
    except ValidationError as e:
        logger.info("Rejected record for chain %s from %s: %s", chain_id, client, e)
        raise _invalid(e) from e
    except (AppendFailed, TailDivergence, StoreError) as e:
        raise _unavailable(e) from e

    if not created:
        response.status_code = status.HTTP_200_OK
    return record


# ── Read path ────────────────────────────────────────────────────────


@router.get("/chains/{chain_id}/verify", response_model=VerificationReport)
async def verify_chain(
    chain_id: str,
    from_sequence: int | None = Query(default=None, ge=1),
    to_sequence: int | None = Query(default=None, ge=0),
    services: Services = Depends(get_services),
    client: str = Depends(verify_client),
) -> VerificationReport:
    """Recompute and check every link in the range. Breaks are listed, not raised."""
    try:
        return await services.verifier.verify(chain_id, from_sequence, to_sequence)
    except ValidationError as e:
        raise _invalid(e) from e
    except StoreError as e:
        raise _unavailable(e) from e


@router.get("/chains/{chain_id}/records", response_model=list[AuditRecord])
async def find_records(
    chain_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
    client: str = Depends(verify_client),
) -> list[AuditRecord]:
    """Look up records by entity, actor and time range, ascending by sequence."""
    for name, value in (("start", start), ("end", end)):
        if value is not None and value.tzinfo is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": f"{name} must include a timezone", "field": name},
            )
    try:
        return await services.store.find(
            chain_id,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            start=start,
            end=end,
            limit=limit,
        )
    except StoreError as e:
        raise _unavailable(e) from e


@router.get("/chains/{chain_id}/tail", response_model=ChainTail)
async def chain_tail(
    chain_id: str,
    services: Services = Depends(get_services),
    client: str = Depends(verify_client),
) -> ChainTail:
    try:
        return await services.engine.tail(chain_id)
    except StoreError as e:
        raise _unavailable(e) from e


@router.get("/chains/{chain_id}/partitions/eligible", response_model=EligiblePartitions)
async def eligible_partitions(
    chain_id: str,
    services: Services = Depends(get_services),
    client: str = Depends(verify_client),
) -> EligiblePartitions:
    """Partitions whose retention period has fully elapsed and are not yet archived."""
    try:
        partition_ids = await services.partitions.archive_eligible_partitions(chain_id)
    except StoreError as e:
        raise _unavailable(e) from e
    return EligiblePartitions(
        chain_id=chain_id,
        granularity=services.partitions.granularity,
        retention_years=services.partitions.retention_years,
        partition_ids=partition_ids,
    )
