"""Batch job endpoints for an external scheduler.

All routes require the ``X-Cron-Secret`` header.  Each job runs its own
per-item transactions through the session factory and returns its report;
per-item failures are collected in the report rather than failing the
request.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from billing_api.dependencies import (
    EngineSettingsDep,
    OptionalGatewayDep,
    PlatformConfigDep,
    SessionFactoryDep,
    require_cron_secret,
)
from billing_engine.cycles.calculator import local_today
from billing_engine.ledger.credit_ledger import CreditLedger
from billing_engine.lifecycle.auto_cancel import AutoCancelJob
from billing_engine.models.billing import RenewalReport
from billing_engine.models.enums import BillingPeriod
from billing_engine.models.lifecycle import AutoCancelReport
from billing_engine.payments.dunning import PaymentRetryJob, PaymentRetryReport
from billing_engine.payments.refunds import RefundProcessor, RefundRunReport
from billing_engine.renewal.runner import RenewalRunner
from billing_engine.state.database import transaction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)])


class RenewalRunRequest(BaseModel):
    period: BillingPeriod
    run_date: date | None = Field(default=None, description="Defaults to today in the platform timezone.")


@router.post("/renewals", response_model=RenewalReport)
async def run_renewals(
    body: RenewalRunRequest,
    config: PlatformConfigDep,
    engine_settings: EngineSettingsDep,
    session_factory: SessionFactoryDep,
    gateway: OptionalGatewayDep,
) -> RenewalReport:
    """Open the next cycle for every due group of one period."""
    run_date = body.run_date or local_today(datetime.now(UTC), config.tz)
    runner = RenewalRunner(
        session_factory,
        config,
        concurrency=engine_settings.renewal_concurrency,
        batch_size=engine_settings.renewal_batch_size,
        gateway=gateway,
    )
    return await runner.run_renewals(body.period, run_date)


@router.post("/expire-credits")
async def expire_credits(config: PlatformConfigDep, session_factory: SessionFactoryDep) -> dict[str, Any]:
    async with transaction(session_factory) as session:
        expired = await CreditLedger(session, config).expire_due()
    return {"expired": expired}


@router.post("/auto-cancel", response_model=AutoCancelReport)
async def auto_cancel_paused(config: PlatformConfigDep, session_factory: SessionFactoryDep) -> AutoCancelReport:
    """Cancel groups paused for longer than ``max_pause_days``."""
    return await AutoCancelJob(session_factory, config).run()


@router.post("/refunds", response_model=RefundRunReport)
async def process_refunds(
    session_factory: SessionFactoryDep,
    gateway: OptionalGatewayDep,
    limit: int = Query(100, ge=1, le=1000),
) -> RefundRunReport:
    """Submit pending refund requests to the gateway."""
    if gateway is None:
        logger.warning("Refund processing requested but the gateway is not configured")
        return RefundRunReport()
    return await RefundProcessor(session_factory, gateway).process_pending(limit=limit)


@router.post("/payment-retry", response_model=PaymentRetryReport)
async def retry_unpaid_renewals(
    config: PlatformConfigDep,
    session_factory: SessionFactoryDep,
    gateway: OptionalGatewayDep,
) -> PaymentRetryReport:
    """Retry unpaid renewal invoices and pause groups still unpaid after 72 hours."""
    if gateway is None:
        logger.warning("Payment retry requested without a gateway; only overdue groups will be paused")
    return await PaymentRetryJob(session_factory, config, gateway=gateway).run()
