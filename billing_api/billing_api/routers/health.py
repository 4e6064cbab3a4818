"""Liveness and readiness for the billing API.

``GET /api/v1/health`` reports the store, whether a payment gateway is
wired in and how many reconciliation gaps still wait for an operator.
``GET /ready`` is mounted without the version prefix and turns 503 while
the store is unreachable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api import __version__
from billing_api.dependencies import OptionalGatewayDep, SessionDep
from billing_engine.state.repository import ReconciliationGapRepository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])
readiness_router = APIRouter(tags=["infrastructure"])


async def _store_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Billing store health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session: SessionDep, gateway: OptionalGatewayDep) -> dict[str, Any]:
    body: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "gateway": "disabled" if gateway is None else "configured",
        "open_gaps": None,
    }
    if not await _store_reachable(session):
        body["status"] = "degraded"
        body["db"] = "degraded"
        return body
    body["open_gaps"] = await ReconciliationGapRepository(session).count_unresolved()
    return body


@readiness_router.get("/ready")
async def ready(session: SessionDep) -> JSONResponse:
    """200 once the billing store answers, 503 otherwise."""
    reachable = await _store_reachable(session)
    return JSONResponse(
        status_code=status.HTTP_200_OK if reachable else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if reachable else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if reachable else "unavailable"},
        },
    )
