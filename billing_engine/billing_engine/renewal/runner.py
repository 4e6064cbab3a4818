"""Renewal batch runner.

Iterates every non-cancelled group of one billing period and opens the
next cycle for those that are due, each group in its own transaction:

* a group is due when its latest cycle's ``renewal_date`` is on or before
  the upcoming renewal date: ``run_date`` itself when it opens a cycle,
  otherwise the next renewal date after it;
* the new cycle starts at that renewal date, or at the start of the cycle
  containing ``run_date`` when renewals were missed; a cycle opening on
  ``run_date`` is billed in full, and on a missed renewal billing starts the
  day after ``run_date``;
* available credits are deducted; a renewal fully covered by credits is
  recorded ``paid`` and its orders are generated immediately;
* autopay groups with a mandate get a gateway payment request after the
  group's transaction commits.

Work is bounded by an ``asyncio.Semaphore``.  :meth:`RenewalRunner.stop`
(or cancelling the task) stops scheduling new groups; groups already
committed stay committed.  Re-running for the same date is a no-op: the
latest cycle then already reaches past the upcoming renewal date, and the
``(group_id, cycle_start)`` unique key on cycles settles concurrent runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import CycleWindow, cycle_for, next_renewal_date
from billing_engine.errors import BillingEngineError
from billing_engine.lifecycle.invoicing import CycleBiller
from billing_engine.models.billing import RenewalReport, RenewedInvoice
from billing_engine.models.enums import BillingPeriod, CycleKind, GroupStatus, InvoiceStatus, PaymentMethod
from billing_engine.orders.generator import OrderGenerator
from billing_engine.payments.collection import PaymentRequest, request_payment
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.state.database import transaction
from billing_engine.state.repository import CycleRepository, GroupRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def renewal_window(
    latest_renewal_date: date,
    run_date: date,
    period: BillingPeriod,
) -> tuple[CycleWindow, date] | None:
    """Return ``(window, billable_from)`` for the next cycle, or ``None`` if not due."""
    current = cycle_for(run_date, period)
    upcoming = run_date if current.start == run_date else next_renewal_date(run_date, period)
    if latest_renewal_date > upcoming:
        return None
    start = max(latest_renewal_date, current.start)
    window = cycle_for(start, period)
    billable_from = window.start if window.start >= run_date else run_date + timedelta(days=1)
    if billable_from > window.end:
        window = cycle_for(window.renewal_date, period)
        billable_from = window.start
    return window, billable_from


class RenewalRunner:
    """Runs renewals for one period with a bounded worker pool.

    Parameters
    ----------
    session_factory:
        Factory for the per-group transactions.
    config:
        Platform config, resolved once for the whole run.
    concurrency:
        Maximum number of groups processed at once.
    batch_size:
        Keyset page size when listing groups.
    gateway:
        Optional gateway client used for autopay requests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PlatformConfig,
        *,
        concurrency: int = 8,
        batch_size: int = 100,
        gateway: PaymentGatewayClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._concurrency = max(1, concurrency)
        self._batch_size = max(1, batch_size)
        self._gateway = gateway
        self._clock = clock or _utcnow
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Stop scheduling further groups; in-flight groups finish normally."""
        self._stop.set()

    async def run_renewals(self, period: BillingPeriod, run_date: date) -> RenewalReport:
        """Renew every due group of *period* as of *run_date*."""
        self._stop.clear()
        report = RenewalReport(period=period, run_date=run_date)
        semaphore = asyncio.Semaphore(self._concurrency)
        after: str | None = None

        logger.info("Renewal run started: period=%s run_date=%s", period.value, run_date.isoformat())
        while not self._stop.is_set():
            async with transaction(self._session_factory) as session:
                batch = await GroupRepository(session).list_renewable_ids(
                    period.value, after_group_id=after, limit=self._batch_size
                )
            if not batch:
                break
            after = batch[-1]
            await asyncio.gather(*[self._guarded(group_id, period, run_date, semaphore, report) for group_id in batch])

        report.aborted = self._stop.is_set()
        logger.info(
            "Renewal run finished: period=%s examined=%d invoiced=%d skipped=%d errors=%d%s",
            period.value,
            report.examined,
            report.count,
            len(report.skipped),
            len(report.errors),
            " (aborted)" if report.aborted else "",
        )
        return report

    async def _guarded(
        self,
        group_id: str,
        period: BillingPeriod,
        run_date: date,
        semaphore: asyncio.Semaphore,
        report: RenewalReport,
    ) -> None:
        async with semaphore:
            if self._stop.is_set():
                return
            report.examined += 1
            try:
                renewed, skip_reason, autopay = await self._renew_group(group_id, period, run_date)
            except Exception as exc:
                # One group's failure must not abort the batch.
                logger.exception("Renewal failed for group %s", group_id, extra={"group_id": group_id})
                report.errors[group_id] = f"{type(exc).__name__}: {exc}"
                return

            if renewed is None:
                report.skipped[group_id] = skip_reason or "not due"
                return
            report.invoices.append(renewed)
            if autopay is not None:
                await self._request_autopay(autopay, report)

    async def _renew_group(
        self,
        group_id: str,
        period: BillingPeriod,
        run_date: date,
    ) -> tuple[RenewedInvoice | None, str | None, PaymentRequest | None]:
        async with transaction(self._session_factory) as session:
            groups = GroupRepository(session)
            group = await groups.get(group_id, for_update=True)
            if group is None:
                return None, "not found", None
            if group.status == GroupStatus.CANCELLED.value:
                return None, "cancelled", None
            if group.status == GroupStatus.PAUSED.value:
                return None, "paused", None

            latest = await CycleRepository(session).latest_for_group(group_id)
            if latest is None:
                return None, "no billing history", None
            planned = renewal_window(latest.renewal_date, run_date, period)
            if planned is None:
                return None, "not due", None
            window, billable_from = planned

            billed = await CycleBiller(session, self._config, clock=self._clock).open_cycle(
                group, window=window, billable_from=billable_from, kind=CycleKind.RENEWAL
            )
            if billed is None or billed.invoice is None:
                return None, "already renewed", None
            await groups.reset_skips(group_id)

            invoice = billed.invoice
            if invoice.status == InvoiceStatus.PAID.value:
                await OrderGenerator(session, self._config).generate_for_cycle(billed.cycle.cycle_id)

            autopay: PaymentRequest | None = None
            if (
                invoice.status == InvoiceStatus.PENDING_PAYMENT.value
                and group.payment_method == PaymentMethod.UPI_AUTOPAY.value
                and group.gateway_customer_id
                and group.mandate_ref
            ):
                autopay = PaymentRequest(
                    group_id=group_id,
                    invoice_id=invoice.invoice_id,
                    customer_id=group.gateway_customer_id,
                    token=group.mandate_ref,
                    amount=invoice.total_amount,
                    currency=invoice.currency,
                    receipt=invoice.receipt,
                )

            renewed = RenewedInvoice(
                invoice_id=invoice.invoice_id,
                group_id=group_id,
                consumer_id=group.consumer_id,
                vendor_id=group.vendor_id,
                cycle_start=window.start,
                total_amount=invoice.total_amount,
                credits_applied=invoice.credits_applied,
                status=invoice.status,
            )
        return renewed, None, autopay

    async def _request_autopay(self, request: PaymentRequest, report: RenewalReport) -> None:
        if self._gateway is None:
            return
        try:
            await request_payment(self._gateway, self._session_factory, request)
        except BillingEngineError as exc:
            # The invoice stays pending; the customer can still pay manually.
            logger.warning(
                "Autopay request failed for group %s: %s", request.group_id, exc, extra={"group_id": request.group_id}
            )
            report.errors[request.group_id] = f"autopay: {exc}"
