"""Operator endpoints for the reconciliation queue.

A gap is a paid invoice whose order generation failed.  Operators list
open gaps, retry generation (which resolves the gap on success) or close a
gap that was fixed by hand.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from billing_api.dependencies import PlatformConfigDep, PrincipalDep, SessionFactoryDep
from billing_engine.models.orders import OrderGenerationReport
from billing_engine.payments.reconciliation import GapRecord, ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/gaps", response_model=list[GapRecord])
async def list_gaps(
    config: PlatformConfigDep,
    session_factory: SessionFactoryDep,
    _principal: PrincipalDep,
    limit: int = Query(100, ge=1, le=500),
) -> list[GapRecord]:
    """List unresolved reconciliation gaps, oldest first."""
    return await ReconciliationService(session_factory, config).list_unresolved(limit=limit)


@router.post("/gaps/{gap_id}/retry", response_model=OrderGenerationReport)
async def retry_gap(
    gap_id: str,
    config: PlatformConfigDep,
    session_factory: SessionFactoryDep,
    principal_id: PrincipalDep,
) -> OrderGenerationReport:
    """Re-run order generation for the gap's cycle."""
    return await ReconciliationService(session_factory, config).retry(gap_id, resolved_by=principal_id)


@router.post("/gaps/{gap_id}/resolve")
async def resolve_gap(
    gap_id: str,
    config: PlatformConfigDep,
    session_factory: SessionFactoryDep,
    principal_id: PrincipalDep,
) -> dict[str, Any]:
    """Close a gap without retrying."""
    resolved = await ReconciliationService(session_factory, config).resolve(gap_id, resolved_by=principal_id)
    return {"gap_id": gap_id, "resolved": resolved}


@router.get("/stats")
async def reconciliation_stats(
    config: PlatformConfigDep,
    session_factory: SessionFactoryDep,
    _principal: PrincipalDep,
) -> dict[str, Any]:
    return {"unresolved": await ReconciliationService(session_factory, config).count_unresolved()}
