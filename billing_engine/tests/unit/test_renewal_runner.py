"""Tests for billing_engine.renewal.runner."""

from __future__ import annotations

import json
from datetime import date
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from billing_engine.cycles.calculator import CycleWindow
from billing_engine.ledger.credit_ledger import CreditLedger
from billing_engine.lifecycle.state_machine import SubscriptionLifecycle
from billing_engine.models.enums import BillingPeriod, CreditReason, InvoiceStatus, PaymentMethod, RefundPreference
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.payments.retry import RetryConfig
from billing_engine.renewal.runner import RenewalRunner, renewal_window
from billing_engine.state.database import transaction
from billing_engine.state.repository import CycleRepository, GroupRepository, InvoiceRepository, OrderRepository

LATEST_RENEWAL = date(2024, 6, 17)


@pytest.fixture()
def runner(session_factory, config, clock) -> RenewalRunner:
    return RenewalRunner(session_factory, config, concurrency=1, batch_size=2, clock=clock)


# ---------------------------------------------------------------------------
# renewal_window (pure)
# ---------------------------------------------------------------------------


class TestRenewalWindow:
    def test_due_ahead_of_renewal_date(self) -> None:
        window, billable_from = renewal_window(LATEST_RENEWAL, date(2024, 6, 14), BillingPeriod.WEEKLY)
        assert window == CycleWindow(start=date(2024, 6, 17), end=date(2024, 6, 23))
        assert billable_from == date(2024, 6, 17)

    def test_not_due_when_next_cycle_already_exists(self) -> None:
        assert renewal_window(date(2024, 6, 24), date(2024, 6, 14), BillingPeriod.WEEKLY) is None

    def test_run_on_renewal_day_bills_whole_cycle(self) -> None:
        window, billable_from = renewal_window(LATEST_RENEWAL, date(2024, 6, 17), BillingPeriod.WEEKLY)
        assert window == CycleWindow(start=date(2024, 6, 17), end=date(2024, 6, 23))
        assert billable_from == date(2024, 6, 17)

    def test_renewal_day_does_not_reach_a_week_ahead(self) -> None:
        assert renewal_window(date(2024, 6, 24), date(2024, 6, 17), BillingPeriod.WEEKLY) is None
        assert renewal_window(date(2024, 8, 1), date(2024, 7, 1), BillingPeriod.MONTHLY) is None

    def test_missed_renewal_skips_elapsed_days(self) -> None:
        window, billable_from = renewal_window(LATEST_RENEWAL, date(2024, 6, 26), BillingPeriod.WEEKLY)
        assert window.start == date(2024, 6, 24)
        assert billable_from == date(2024, 6, 27)

    def test_missed_renewal_on_last_day_rolls_forward(self) -> None:
        window, billable_from = renewal_window(LATEST_RENEWAL, date(2024, 6, 30), BillingPeriod.WEEKLY)
        assert window == CycleWindow(start=date(2024, 7, 1), end=date(2024, 7, 7))
        assert billable_from == date(2024, 7, 1)

    def test_monthly(self) -> None:
        window, billable_from = renewal_window(date(2024, 7, 1), date(2024, 6, 25), BillingPeriod.MONTHLY)
        assert window == CycleWindow(start=date(2024, 7, 1), end=date(2024, 7, 31))
        assert billable_from == date(2024, 7, 1)


# ---------------------------------------------------------------------------
# RenewalRunner
# ---------------------------------------------------------------------------


class TestRenewalRunner:
    @pytest.mark.asyncio
    async def test_renews_due_group(self, checkout, pay, runner, session_factory) -> None:
        result = await checkout()
        await pay(result.invoice_id, result.total_amount)

        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))

        assert report.examined == 1
        assert report.count == 1
        renewed = report.invoices[0]
        assert renewed.group_id == result.group_id
        assert renewed.cycle_start == date(2024, 6, 17)
        assert renewed.total_amount == 30_000
        assert renewed.status == InvoiceStatus.PENDING_PAYMENT.value

    @pytest.mark.asyncio
    async def test_rerun_is_noop(self, checkout, pay, runner, session_factory) -> None:
        result = await checkout()
        await pay(result.invoice_id, result.total_amount)

        await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))
        again = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))

        assert again.count == 0
        assert again.skipped == {result.group_id: "not due"}
        async with transaction(session_factory) as session:
            cycles = await CycleRepository(session).list_for_group(result.group_id)
        assert len(cycles) == 2

    @pytest.mark.asyncio
    async def test_rerun_on_renewal_day_is_noop(self, checkout, pay, runner, session_factory) -> None:
        result = await checkout()
        await pay(result.invoice_id, result.total_amount)

        first = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 17))
        again = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 17))

        assert first.count == 1
        assert first.invoices[0].cycle_start == date(2024, 6, 17)
        assert again.count == 0
        assert again.skipped == {result.group_id: "not due"}
        async with transaction(session_factory) as session:
            cycles = await CycleRepository(session).list_for_group(result.group_id)
        assert [c.cycle_start for c in cycles] == [date(2024, 6, 10), date(2024, 6, 17)]
        assert cycles[-1].billable_from == date(2024, 6, 17)

    @pytest.mark.asyncio
    async def test_credits_cover_renewal(self, checkout, pay, runner, session_factory, config, clock) -> None:
        result = await checkout()
        await pay(result.invoice_id, result.total_amount)
        async with transaction(session_factory) as session:
            ledger = CreditLedger(session, config, clock=clock)
            for _ in range(3):
                await ledger.issue(
                    consumer_id="consumer-1",
                    group_id=result.group_id,
                    amount=10_000,
                    reason=CreditReason.ADMIN_ADJUSTMENT,
                )

        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))

        renewed = report.invoices[0]
        assert renewed.total_amount == 0
        assert renewed.credits_applied == 30_000
        assert renewed.status == InvoiceStatus.PAID.value
        async with transaction(session_factory) as session:
            cycle = await CycleRepository(session).latest_for_group(result.group_id)
            orders = await OrderRepository(session).list_for_cycle(cycle.cycle_id)
        assert [o.service_date for o in orders] == [date(2024, 6, 17), date(2024, 6, 19), date(2024, 6, 21)]

    @pytest.mark.asyncio
    async def test_paused_and_cancelled_groups_are_skipped(
        self, checkout, pay, runner, session_factory, config, clock
    ) -> None:
        paused = await checkout("consumer-1")
        await pay(paused.invoice_id, paused.total_amount, payment_id="pay_a")
        cancelled = await checkout("consumer-2")
        await pay(cancelled.invoice_id, cancelled.total_amount, payment_id="pay_b")
        async with transaction(session_factory) as session:
            lifecycle = SubscriptionLifecycle(session, config, clock=clock)
            await lifecycle.confirm_pause(paused.group_id, date(2024, 6, 12), principal_id="c1", confirm=True)
            await lifecycle.confirm_cancel(
                cancelled.group_id,
                date(2024, 6, 12),
                reason="x",
                refund_preference=RefundPreference.CREDIT,
                principal_id="c2",
                confirm=True,
            )

        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))

        assert report.count == 0
        assert report.skipped == {paused.group_id: "paused"}

    @pytest.mark.asyncio
    async def test_pages_through_groups(self, checkout, pay, runner) -> None:
        for i in range(5):
            result = await checkout(f"consumer-{i}")
            await pay(result.invoice_id, result.total_amount, payment_id=f"pay_{i}")

        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))

        assert report.examined == 5
        assert report.count == 5
        assert report.aborted is False

    @pytest.mark.asyncio
    async def test_monthly_groups_not_touched_by_weekly_run(self, checkout, pay, runner) -> None:
        result = await checkout(period=BillingPeriod.MONTHLY)
        await pay(result.invoice_id, result.total_amount)
        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))
        assert report.examined == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, checkout, pay, runner) -> None:
        for i in range(2):
            result = await checkout(f"consumer-{i}")
            await pay(result.invoice_id, result.total_amount, payment_id=f"pay_{i}")

        with patch(
            "billing_engine.renewal.runner.CycleBiller.open_cycle",
            new=AsyncMock(side_effect=RuntimeError("db hiccup")),
        ):
            report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))

        assert report.examined == 2
        assert report.count == 0
        assert all("db hiccup" in e for e in report.errors.values())
        assert len(report.errors) == 2

    @pytest.mark.asyncio
    async def test_autopay_charges_mandate(self, checkout, pay, session_factory, config, clock) -> None:
        result = await checkout(payment_method=PaymentMethod.UPI_AUTOPAY)
        await pay(result.invoice_id, result.total_amount)
        async with transaction(session_factory) as session:
            group = await GroupRepository(session).get(result.group_id)
            group.gateway_customer_id = "cust_1"
            group.mandate_ref = "token_1"

        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if request.url.path.endswith("/orders"):
                return httpx.Response(200, json={"id": "order_renewal"})
            return httpx.Response(200, json={"razorpay_payment_id": "pay_auto"})

        gateway = PaymentGatewayClient(
            "k",
            "s",
            base_url="https://gateway.test/v1",
            retry=RetryConfig(max_retries=0, base_delay=0.01),
            transport=httpx.MockTransport(handler),
        )
        runner = RenewalRunner(session_factory, config, concurrency=1, gateway=gateway, clock=clock)
        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))
        await gateway.close()

        assert report.count == 1
        assert [c.url.path for c in calls] == ["/v1/orders", "/v1/payments/create/recurring"]
        recurring = json.loads(calls[1].content)
        assert recurring["token"] == "token_1"
        assert recurring["order_id"] == "order_renewal"
        assert recurring["amount"] == 30_000

        async with transaction(session_factory) as session:
            invoice = await InvoiceRepository(session).get(report.invoices[0].invoice_id)
        assert invoice.gateway_order_id == "order_renewal"

    @pytest.mark.asyncio
    async def test_autopay_failure_reported(self, checkout, pay, session_factory, config, clock) -> None:
        result = await checkout(payment_method=PaymentMethod.UPI_AUTOPAY)
        await pay(result.invoice_id, result.total_amount)
        async with transaction(session_factory) as session:
            group = await GroupRepository(session).get(result.group_id)
            group.gateway_customer_id = "cust_1"
            group.mandate_ref = "token_1"

        gateway = PaymentGatewayClient(
            "k",
            "s",
            base_url="https://gateway.test/v1",
            retry=RetryConfig(max_retries=0, base_delay=0.01),
            transport=httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "bad"})),
        )
        runner = RenewalRunner(session_factory, config, concurrency=1, gateway=gateway, clock=clock)
        report = await runner.run_renewals(BillingPeriod.WEEKLY, date(2024, 6, 14))
        await gateway.close()

        assert report.count == 1
        assert report.errors[result.group_id].startswith("autopay:")
        assert report.invoices[0].status == InvoiceStatus.PENDING_PAYMENT.value
