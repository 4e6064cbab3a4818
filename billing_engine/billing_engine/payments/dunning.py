"""Payment retries for renewal invoices left unpaid.

The clock for an unpaid renewal invoice starts at local midnight of the
first day of the cycle it bills.  From there:

* at +6h, +24h and +48h the invoice gets one collection attempt each: a
  fresh gateway order, charged against the mandate for autopay groups;
* from +72h the invoice is voided and the group paused without notice.

Each attempt is claimed with a compare-and-set on the invoice's
``retry_count`` before the gateway is called, so overlapping runs never
make the same attempt twice.  ``last_retry_at`` decides whether the
current offset has already been served.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import as_utc, local_today, start_of_day
from billing_engine.errors import BillingEngineError
from billing_engine.lifecycle.state_machine import SubscriptionLifecycle
from billing_engine.models.enums import PaymentMethod
from billing_engine.payments.collection import PaymentRequest, request_payment
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.state.database import transaction
from billing_engine.state.repository import GroupRepository, InvoiceRepository

logger = logging.getLogger(__name__)

RETRY_OFFSETS = (timedelta(hours=6), timedelta(hours=24), timedelta(hours=48))
PAUSE_AFTER = timedelta(hours=72)
NONPAYMENT_REASON = "unpaid 72 hours after renewal"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DunningAction(str, Enum):
    WAIT = "wait"
    RETRY = "retry"
    PAUSE = "pause"


def dunning_action(due_at: datetime, now: datetime, last_retry_at: datetime | None) -> DunningAction:
    """Decide what an unpaid invoice due at *due_at* needs at *now*.

    A retry is owed when the latest offset already reached has not been
    served by an attempt made at or after it.
    """
    elapsed = now - due_at
    if elapsed >= PAUSE_AFTER:
        return DunningAction.PAUSE
    reached = [offset for offset in RETRY_OFFSETS if elapsed >= offset]
    if not reached:
        return DunningAction.WAIT
    if last_retry_at is not None and as_utc(last_retry_at) >= due_at + reached[-1]:
        return DunningAction.WAIT
    return DunningAction.RETRY


class PaymentRetryReport(BaseModel):
    as_of: datetime
    examined: int = 0
    retried: list[str] = Field(default_factory=list, description="invoice ids sent for collection")
    paused: list[str] = Field(default_factory=list, description="group ids paused for non-payment")
    voided: list[str] = Field(default_factory=list, description="invoice ids given up on")
    deferred: dict[str, str] = Field(default_factory=dict, description="invoice_id -> why no attempt was made")
    errors: dict[str, str] = Field(default_factory=dict, description="invoice_id -> error")


@dataclass
class _Overdue:
    invoice_id: str
    group_id: str
    cycle_start: date
    retry_count: int
    last_retry_at: datetime | None


class PaymentRetryJob:
    """Retries or gives up on unpaid renewal invoices, one invoice at a time.

    Parameters
    ----------
    session_factory:
        Factory for the per-invoice transactions.
    config:
        Platform config; its timezone anchors the retry clock.
    gateway:
        Gateway client for collection attempts.  Without one, due retries
        are reported as deferred while overdue groups are still paused.
    batch_size:
        Keyset page size when listing invoices.
    clock:
        Returns the current instant; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PlatformConfig,
        *,
        gateway: PaymentGatewayClient | None = None,
        batch_size: int = 50,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._gateway = gateway
        self._batch_size = max(1, batch_size)
        self._clock = clock or _utcnow

    async def run(self) -> PaymentRetryReport:
        now = self._clock().astimezone(UTC)
        today = local_today(now, self._config.tz)
        report = PaymentRetryReport(as_of=now)
        after: str | None = None

        while True:
            async with transaction(self._session_factory) as session:
                rows = await InvoiceRepository(session).list_overdue_renewals(
                    today, after_invoice_id=after, limit=self._batch_size
                )
                batch = [
                    _Overdue(
                        invoice_id=invoice.invoice_id,
                        group_id=invoice.group_id,
                        cycle_start=cycle_start,
                        retry_count=invoice.retry_count,
                        last_retry_at=invoice.last_retry_at,
                    )
                    for invoice, cycle_start in rows
                ]
            if not batch:
                break
            after = batch[-1].invoice_id
            for item in batch:
                report.examined += 1
                try:
                    await self._process(item, now, report)
                except BillingEngineError as exc:
                    logger.warning(
                        "Payment retry failed for invoice %s: %s",
                        item.invoice_id,
                        exc,
                        extra={"invoice_id": item.invoice_id, "group_id": item.group_id},
                    )
                    report.errors[item.invoice_id] = str(exc)

        logger.info(
            "Payment retry run: %d examined, %d retried, %d paused, %d errors",
            report.examined,
            len(report.retried),
            len(report.paused),
            len(report.errors),
        )
        return report

    async def _process(self, item: _Overdue, now: datetime, report: PaymentRetryReport) -> None:
        due_at = start_of_day(item.cycle_start, self._config.tz)
        action = dunning_action(due_at, now, item.last_retry_at)
        if action == DunningAction.WAIT:
            return
        if action == DunningAction.PAUSE:
            await self._give_up(item, report)
            return
        if self._gateway is None:
            report.deferred[item.invoice_id] = "gateway not configured"
            return

        request = await self._claim(item, now)
        if request is None:
            report.deferred[item.invoice_id] = "already retried or settled"
            return
        await request_payment(self._gateway, self._session_factory, request)
        report.retried.append(item.invoice_id)
        logger.info(
            "Retried payment for invoice %s (attempt %d)",
            item.invoice_id,
            item.retry_count + 1,
            extra={"invoice_id": item.invoice_id, "group_id": item.group_id},
        )

    async def _claim(self, item: _Overdue, now: datetime) -> PaymentRequest | None:
        async with transaction(self._session_factory) as session:
            invoices = InvoiceRepository(session)
            if not await invoices.claim_retry(item.invoice_id, expected_count=item.retry_count, at=now):
                return None
            invoice = await invoices.get(item.invoice_id)
            group = await GroupRepository(session).get(item.group_id)
            autopay = group is not None and group.payment_method == PaymentMethod.UPI_AUTOPAY.value
            return PaymentRequest(
                group_id=item.group_id,
                invoice_id=item.invoice_id,
                amount=invoice.total_amount,
                currency=invoice.currency,
                receipt=invoice.receipt,
                customer_id=group.gateway_customer_id if autopay else None,
                token=group.mandate_ref if autopay else None,
            )

    async def _give_up(self, item: _Overdue, report: PaymentRetryReport) -> None:
        async with transaction(self._session_factory) as session:
            lifecycle = SubscriptionLifecycle(session, self._config, clock=self._clock)
            paused = await lifecycle.pause_for_nonpayment(item.group_id, item.invoice_id, reason=NONPAYMENT_REASON)
        report.voided.append(item.invoice_id)
        if paused is not None:
            report.paused.append(item.group_id)
            logger.warning(
                "Paused group %s after 72h without payment",
                item.group_id,
                extra={"invoice_id": item.invoice_id, "group_id": item.group_id},
            )
