"""Operator queue for payments the finalizer could not carry through.

:class:`~billing_engine.payments.finalizer.InvoiceFinalizer` records two kinds
of gap:

* ``order_generation_failed``: the invoice is paid but its orders were not
  generated.  Retrying re-runs generation for the invoice's cycle; generation
  is idempotent, so a retry after a partial first attempt only fills in the
  missing orders.
* ``unapplied_payment``: money was captured for an invoice that could not
  take it.  A refund is already queued; the operator resolves the gap once
  it settles.  These gaps cannot be retried.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import as_utc
from billing_engine.errors import NotFoundError, ReconciliationGap, ValidationError
from billing_engine.models.orders import OrderGenerationReport
from billing_engine.orders.generator import OrderGenerator
from billing_engine.payments.finalizer import GAP_ORDER_GENERATION
from billing_engine.state.database import transaction
from billing_engine.state.repository import ReconciliationGapRepository

logger = logging.getLogger(__name__)


class GapRecord(BaseModel):
    gap_id: str
    invoice_id: str
    cycle_id: str
    kind: str
    detail: str | None = None
    attempts: int
    resolved: bool
    created_at: datetime


class ReconciliationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], config: PlatformConfig) -> None:
        self._session_factory = session_factory
        self._config = config

    async def list_unresolved(self, limit: int = 100) -> list[GapRecord]:
        async with transaction(self._session_factory) as session:
            rows = await ReconciliationGapRepository(session).list_unresolved(limit)
            return [
                GapRecord(
                    gap_id=r.gap_id,
                    invoice_id=r.invoice_id,
                    cycle_id=r.cycle_id,
                    kind=r.kind,
                    detail=r.detail,
                    attempts=r.attempts,
                    resolved=r.resolved,
                    created_at=as_utc(r.created_at),
                )
                for r in rows
            ]

    async def retry(self, gap_id: str, *, resolved_by: str) -> OrderGenerationReport:
        """Re-run order generation for the gap's cycle and resolve it on success.

        Raises
        ------
        NotFoundError
            If the gap does not exist.
        ValidationError
            If the gap is not an order-generation failure.
        ReconciliationGap
            If generation fails again; the failure is recorded on the gap.
        """
        async with transaction(self._session_factory) as session:
            gap = await ReconciliationGapRepository(session).get(gap_id)
            if gap is None:
                raise NotFoundError("reconciliation gap", gap_id)
            if gap.resolved:
                logger.info("Gap %s already resolved by %s", gap_id, gap.resolved_by)
                return OrderGenerationReport(cycle_id=gap.cycle_id)
            if gap.kind != GAP_ORDER_GENERATION:
                raise ValidationError(
                    f"gap {gap_id} is {gap.kind}; resolve it once the refund settles", gap_id=gap_id, kind=gap.kind
                )
            invoice_id, cycle_id = gap.invoice_id, gap.cycle_id

        try:
            async with transaction(self._session_factory) as session:
                report = await OrderGenerator(session, self._config).generate_for_cycle(cycle_id)
                await ReconciliationGapRepository(session).resolve(gap_id, resolved_by)
        except Exception as exc:
            detail = f"{type(exc).__name__}: {exc}"
            logger.exception("Retry of gap %s failed", gap_id)
            async with transaction(self._session_factory) as session:
                await ReconciliationGapRepository(session).record(
                    invoice_id=invoice_id, cycle_id=cycle_id, detail=detail, kind=GAP_ORDER_GENERATION
                )
            raise ReconciliationGap(
                f"order generation still failing for invoice {invoice_id}",
                invoice_id=invoice_id,
                gap_id=gap_id,
                detail=detail,
            ) from exc

        logger.info("Gap %s resolved by %s: %d orders created", gap_id, resolved_by, report.created)
        return report

    async def resolve(self, gap_id: str, *, resolved_by: str) -> bool:
        """Close a gap without retrying (e.g. fixed by hand)."""
        async with transaction(self._session_factory) as session:
            repo = ReconciliationGapRepository(session)
            if await repo.get(gap_id) is None:
                raise NotFoundError("reconciliation gap", gap_id)
            return await repo.resolve(gap_id, resolved_by)

    async def count_unresolved(self) -> int:
        async with transaction(self._session_factory) as session:
            return await ReconciliationGapRepository(session).count_unresolved()
