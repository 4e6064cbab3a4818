"""Tests for pause, resume, cancel and auto-cancel."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from billing_engine.capacity.checker import CapacityChecker
from billing_engine.config import PlatformConfig
from billing_engine.errors import ValidationError
from billing_engine.ledger.credit_ledger import CreditLedger
from billing_engine.lifecycle.auto_cancel import AutoCancelJob
from billing_engine.lifecycle.state_machine import (
    SubscriptionLifecycle,
    classify_resume,
    refund_options,
    resolve_refund_preference,
)
from billing_engine.models.enums import (
    BillingPeriod,
    GroupStatus,
    InvoiceStatus,
    OrderStatus,
    RefundPolicy,
    RefundPreference,
    ResumeScenario,
    Slot,
    Weekday,
)
from billing_engine.renewal.runner import RenewalRunner
from billing_engine.state.database import transaction
from billing_engine.state.repository import (
    GroupRepository,
    InvoiceRepository,
    LifecycleEventRepository,
    OrderRepository,
    RefundRepository,
)

WEEKDAYS = [Weekday.MON, Weekday.TUE, Weekday.WED, Weekday.THU, Weekday.FRI]


@pytest.fixture()
def paid_group(checkout, pay):
    """Return a coroutine producing a paid weekly group starting Monday 2024-06-10."""

    async def _paid_group(weekdays: list[Weekday] | None = None, consumer_id: str = "consumer-1") -> str:
        result = await checkout(consumer_id, weekdays=weekdays)
        await pay(result.invoice_id, result.total_amount, payment_id=f"pay_{result.group_id[:8]}")
        return result.group_id

    return _paid_group


@pytest.fixture()
def run(session_factory, config, clock):
    """Run one lifecycle coroutine inside its own committed transaction."""

    async def _run(method: str, *args, **kwargs):
        async with transaction(session_factory) as session:
            lifecycle = SubscriptionLifecycle(session, config, clock=clock)
            return await getattr(lifecycle, method)(*args, **kwargs)

    return _run


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


class TestClassifyResume:
    @pytest.mark.parametrize(
        ("resume_date", "expected"),
        [
            (date(2024, 6, 14), ResumeScenario.SAME_CYCLE),
            (date(2024, 6, 17), ResumeScenario.NEXT_CYCLE_START),
            (date(2024, 6, 19), ResumeScenario.MID_NEXT_CYCLE),
            (date(2024, 6, 24), ResumeScenario.FUTURE_CYCLE),
        ],
    )
    def test_weekly(self, resume_date: date, expected: ResumeScenario) -> None:
        scenario = classify_resume(date(2024, 6, 16), date(2024, 6, 17), resume_date, BillingPeriod.WEEKLY)
        assert scenario == expected


class TestRefundPolicy:
    def test_options(self) -> None:
        assert refund_options(RefundPolicy.REFUND_ONLY) == [RefundPreference.REFUND]
        assert refund_options(RefundPolicy.CREDIT_ONLY) == [RefundPreference.CREDIT]
        assert refund_options(RefundPolicy.CUSTOMER_CHOICE) == [RefundPreference.REFUND, RefundPreference.CREDIT]

    def test_single_option_is_implied(self) -> None:
        assert resolve_refund_preference(RefundPolicy.CREDIT_ONLY, None) == RefundPreference.CREDIT

    def test_customer_choice_requires_preference(self) -> None:
        with pytest.raises(ValidationError):
            resolve_refund_preference(RefundPolicy.CUSTOMER_CHOICE, None)

    def test_disallowed_preference(self) -> None:
        with pytest.raises(ValidationError, match="not permitted"):
            resolve_refund_preference(RefundPolicy.REFUND_ONLY, RefundPreference.CREDIT)


# ---------------------------------------------------------------------------
# Pause
# ---------------------------------------------------------------------------


class TestPause:
    @pytest.mark.asyncio
    async def test_preview_and_confirm(self, paid_group, run, session_factory, vendor, clock) -> None:
        group_id = await paid_group()

        preview = await run("preview_pause", group_id, date(2024, 6, 10))
        assert preview.orders_count == 3
        assert preview.credits_count == 3
        assert preview.total_amount == 30_000
        assert preview.cycle_end == date(2024, 6, 16)

        result = await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)
        assert result.orders_cancelled == 3
        assert result.credits_created == 3
        assert result.total_credit_amount == 30_000

        async with transaction(session_factory) as session:
            group = await GroupRepository(session).get(group_id)
            credits = await CreditLedger(session, PlatformConfig(), clock=clock).list_available(group_id=group_id)
            scheduled = await OrderRepository(session).list_scheduled(group_id, from_date=date(2024, 6, 10))
            lunch = await CapacityChecker(session).check(vendor, date(2024, 6, 10), Slot.LUNCH.value)
        assert group.status == GroupStatus.PAUSED.value
        assert group.paused_from == date(2024, 6, 10)
        assert [c.amount for c in credits] == [10_000, 10_000, 10_000]
        assert scheduled == []
        assert lunch.current == 0

    @pytest.mark.asyncio
    async def test_mid_cycle_pause_keeps_earlier_orders(self, paid_group, run, session_factory) -> None:
        group_id = await paid_group()
        result = await run("confirm_pause", group_id, date(2024, 6, 12), principal_id="consumer-1", confirm=True)
        assert result.orders_cancelled == 2

        async with transaction(session_factory) as session:
            scheduled = await OrderRepository(session).list_scheduled(group_id, from_date=date(2024, 6, 10))
        assert [o.service_date for o in scheduled] == [date(2024, 6, 10)]

    @pytest.mark.asyncio
    async def test_requires_notice(self, paid_group, run) -> None:
        group_id = await paid_group()
        with pytest.raises(ValidationError, match="notice"):
            await run("confirm_pause", group_id, date(2024, 6, 9), principal_id="consumer-1", confirm=True)

    @pytest.mark.asyncio
    async def test_requires_confirmation(self, paid_group, run) -> None:
        group_id = await paid_group()
        with pytest.raises(ValidationError, match="confirmed"):
            await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=False)

    @pytest.mark.asyncio
    async def test_idempotency_key_replays_result(self, paid_group, run, session_factory) -> None:
        group_id = await paid_group()
        kwargs = {"principal_id": "consumer-1", "confirm": True, "idempotency_key": "pause-1"}
        first = await run("confirm_pause", group_id, date(2024, 6, 10), **kwargs)
        second = await run("confirm_pause", group_id, date(2024, 6, 10), **kwargs)
        assert second == first

        async with transaction(session_factory) as session:
            events = await LifecycleEventRepository(session).list_for_group(group_id)
        assert [e.action for e in events] == ["pause"]

    @pytest.mark.asyncio
    async def test_cannot_pause_twice(self, paid_group, run) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)
        with pytest.raises(ValidationError, match="paused"):
            await run("confirm_pause", group_id, date(2024, 6, 12), principal_id="consumer-1", confirm=True)

    @pytest.mark.asyncio
    async def test_pause_voids_unpaid_later_invoice(self, checkout, run, session_factory) -> None:
        result = await checkout()
        await run("confirm_pause", result.group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)
        async with transaction(session_factory) as session:
            invoice = await InvoiceRepository(session).get(result.invoice_id)
        assert invoice.status == InvoiceStatus.VOID.value

    @pytest.mark.asyncio
    async def test_pause_credits_orders_of_paid_next_cycle(
        self, paid_group, pay, run, session_factory, config, clock
    ) -> None:
        group_id = await paid_group()
        renewal = await RenewalRunner(session_factory, config, concurrency=1, clock=clock).run_renewals(
            BillingPeriod.WEEKLY, date(2024, 6, 14)
        )
        renewal_invoice = renewal.invoices[0].invoice_id
        await pay(renewal_invoice, 30_000, payment_id="pay_next_cycle")

        result = await run("confirm_pause", group_id, date(2024, 6, 12), principal_id="consumer-1", confirm=True)

        assert result.orders_cancelled == 5
        assert result.total_credit_amount == 50_000
        async with transaction(session_factory) as session:
            invoice = await InvoiceRepository(session).get(renewal_invoice)
        assert invoice.status == InvoiceStatus.PAID.value


class TestPauseForNonpayment:
    @pytest.mark.asyncio
    async def test_voids_invoice_and_pauses_as_system(self, paid_group, run, session_factory, config, clock) -> None:
        group_id = await paid_group()
        renewal = await RenewalRunner(session_factory, config, concurrency=1, clock=clock).run_renewals(
            BillingPeriod.WEEKLY, date(2024, 6, 14)
        )
        invoice_id = renewal.invoices[0].invoice_id
        clock.set(clock.now + timedelta(days=11))

        result = await run("pause_for_nonpayment", group_id, invoice_id, reason="unpaid")

        assert result.pause_date == date(2024, 6, 19)
        assert result.orders_cancelled == 0
        async with transaction(session_factory) as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
            group = await GroupRepository(session).get(group_id)
            events = await LifecycleEventRepository(session).list_for_group(group_id)
        assert invoice.status == InvoiceStatus.VOID.value
        assert invoice.failure_reason == "unpaid"
        assert group.status == GroupStatus.PAUSED.value
        assert [(e.action, e.principal_id) for e in events] == [("auto_pause", "system")]

    @pytest.mark.asyncio
    async def test_paused_group_only_loses_invoice(self, paid_group, run, session_factory, config, clock) -> None:
        group_id = await paid_group()
        renewal = await RenewalRunner(session_factory, config, concurrency=1, clock=clock).run_renewals(
            BillingPeriod.WEEKLY, date(2024, 6, 14)
        )
        invoice_id = renewal.invoices[0].invoice_id
        await run("confirm_pause", group_id, date(2024, 6, 19), principal_id="consumer-1", confirm=True)

        result = await run("pause_for_nonpayment", group_id, invoice_id, reason="unpaid")

        assert result is None
        async with transaction(session_factory) as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
        assert invoice.status == InvoiceStatus.VOID.value
        assert invoice.failure_reason == "unpaid"


# ---------------------------------------------------------------------------
# Resume)
# ---------------------------------------------------------------------------


class TestResume:
    @pytest.mark.asyncio
    async def test_same_cycle_reinstates_orders(self, paid_group, run, session_factory, clock) -> None:
        group_id = await paid_group(WEEKDAYS)
        await run("confirm_pause", group_id, date(2024, 6, 12), principal_id="consumer-1", confirm=True)

        preview = await run("preview_resume", group_id, date(2024, 6, 14))
        assert preview.scenario == ResumeScenario.SAME_CYCLE
        assert preview.requires_payment is False
        assert preview.residual_amount == 0

        result = await run("confirm_resume", group_id, date(2024, 6, 14), principal_id="consumer-1", confirm=True)
        assert result.scenario == ResumeScenario.SAME_CYCLE
        assert result.invoice_id is None
        assert result.orders_reinstated == 1
        assert result.credits_applied == 1

        async with transaction(session_factory) as session:
            order = await OrderRepository(session).find(
                (await GroupRepository(session).list_subscriptions(group_id))[0].subscription_id,
                date(2024, 6, 14),
                Slot.LUNCH.value,
            )
            balance = await CreditLedger(session, PlatformConfig(), clock=clock).balance(group_id)
            group = await GroupRepository(session).get(group_id)
        assert order.status == OrderStatus.SCHEDULED.value
        assert balance == 20_000
        assert group.status == GroupStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_future_cycle_bills_residual(self, paid_group, run, session_factory, clock) -> None:
        group_id = await paid_group(WEEKDAYS)
        paused = await run("confirm_pause", group_id, date(2024, 6, 13), principal_id="consumer-1", confirm=True)
        assert paused.credits_created == 2

        preview = await run("preview_resume", group_id, date(2024, 6, 24))
        assert preview.scenario == ResumeScenario.FUTURE_CYCLE
        assert preview.estimated_amount == 50_000
        assert preview.credits_to_apply == 2
        assert preview.credit_amount_applied == 20_000
        assert preview.residual_amount == 30_000
        assert preview.requires_payment is True
        assert (preview.new_cycle_start, preview.new_cycle_end) == (date(2024, 6, 24), date(2024, 6, 30))

        result = await run("confirm_resume", group_id, date(2024, 6, 24), principal_id="consumer-1", confirm=True)
        assert result.invoice_id is not None
        assert result.invoice_amount == 30_000
        assert result.credits_applied == 2
        assert result.orders_created == 0

        async with transaction(session_factory) as session:
            invoice = await InvoiceRepository(session).get(result.invoice_id)
            balance = await CreditLedger(session, PlatformConfig(), clock=clock).balance(group_id)
        assert invoice.status == InvoiceStatus.PENDING_PAYMENT.value
        assert invoice.gross_amount == 50_000
        assert invoice.credits_applied == 20_000
        assert invoice.total_amount == 30_000
        assert balance == 0

    @pytest.mark.asyncio
    async def test_next_cycle_start_covered_by_credits(self, paid_group, run) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)

        result = await run("confirm_resume", group_id, date(2024, 6, 17), principal_id="consumer-1", confirm=True)
        assert result.scenario == ResumeScenario.NEXT_CYCLE_START
        assert result.invoice_id is None
        assert result.credits_applied == 3
        assert result.orders_created == 3

    @pytest.mark.asyncio
    async def test_mid_next_cycle_bills_from_resume_date(self, paid_group, run) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)

        preview = await run("preview_resume", group_id, date(2024, 6, 19))
        assert preview.scenario == ResumeScenario.MID_NEXT_CYCLE
        assert preview.estimated_amount == 20_000
        assert preview.residual_amount == 0

        result = await run("confirm_resume", group_id, date(2024, 6, 19), principal_id="consumer-1", confirm=True)
        assert result.orders_created == 2
        assert result.credits_applied == 2

    @pytest.mark.asyncio
    async def test_resume_before_pause_rejected(self, paid_group, run) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 12), principal_id="consumer-1", confirm=True)
        with pytest.raises(ValidationError, match="before the pause"):
            await run("preview_resume", group_id, date(2024, 6, 11))

    @pytest.mark.asyncio
    async def test_resume_active_group_rejected(self, paid_group, run) -> None:
        group_id = await paid_group()
        with pytest.raises(ValidationError):
            await run("confirm_resume", group_id, date(2024, 6, 14), principal_id="consumer-1", confirm=True)


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_as_credit(self, paid_group, run, session_factory) -> None:
        group_id = await paid_group()

        preview = await run("preview_cancel", group_id, date(2024, 6, 12))
        assert preview.orders_count == 2
        assert preview.remaining_meals_value == 20_000
        assert preview.total_refund_credit == 20_000
        assert preview.refund_options == [RefundPreference.REFUND, RefundPreference.CREDIT]

        result = await run(
            "confirm_cancel",
            group_id,
            date(2024, 6, 12),
            reason="moving city",
            refund_preference=RefundPreference.CREDIT,
            principal_id="consumer-1",
            confirm=True,
        )
        assert result.refund_amount == 20_000
        assert result.orders_cancelled == 2
        assert result.credit_id is not None
        assert result.refund_id is None

        async with transaction(session_factory) as session:
            group = await GroupRepository(session).get(group_id)
        assert group.status == GroupStatus.CANCELLED.value
        assert group.cancellation_reason == "moving city"

    @pytest.mark.asyncio
    async def test_cancel_as_refund(self, paid_group, run, session_factory) -> None:
        group_id = await paid_group()
        result = await run(
            "confirm_cancel",
            group_id,
            date(2024, 6, 12),
            reason="unhappy",
            refund_preference=RefundPreference.REFUND,
            principal_id="consumer-1",
            confirm=True,
        )
        assert result.refund_id is not None

        async with transaction(session_factory) as session:
            pending = await RefundRepository(session).list_pending()
        assert len(pending) == 1
        assert pending[0].amount == 20_000
        assert pending[0].gateway_payment_id == f"pay_{group_id[:8]}"

    @pytest.mark.asyncio
    async def test_paused_group_settles_credits(self, paid_group, run) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)
        result = await run(
            "confirm_cancel",
            group_id,
            date(2024, 6, 12),
            reason="done",
            refund_preference=RefundPreference.CREDIT,
            principal_id="consumer-1",
            confirm=True,
        )
        assert result.orders_cancelled == 0
        assert result.credits_settled == 3
        assert result.refund_amount == 30_000

    @pytest.mark.asyncio
    async def test_preference_required_under_customer_choice(self, paid_group, run) -> None:
        group_id = await paid_group()
        with pytest.raises(ValidationError, match="refund_preference"):
            await run(
                "confirm_cancel",
                group_id,
                date(2024, 6, 12),
                reason="x",
                refund_preference=None,
                principal_id="consumer-1",
                confirm=True,
            )

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, paid_group, run) -> None:
        group_id = await paid_group()
        kwargs = {
            "reason": "x",
            "refund_preference": RefundPreference.CREDIT,
            "principal_id": "consumer-1",
            "confirm": True,
        }
        await run("confirm_cancel", group_id, date(2024, 6, 12), **kwargs)
        with pytest.raises(ValidationError, match="already cancelled"):
            await run("confirm_cancel", group_id, date(2024, 6, 12), **kwargs)

    @pytest.mark.asyncio
    async def test_cancellation_credit_applies_to_next_checkout(self, paid_group, run, checkout) -> None:
        group_id = await paid_group()
        await run(
            "confirm_cancel",
            group_id,
            date(2024, 6, 12),
            reason="switching plan",
            refund_preference=RefundPreference.CREDIT,
            principal_id="consumer-1",
            confirm=True,
        )
        fresh = await checkout("consumer-1", start_date=date(2024, 6, 17))
        # 20000 of store credit against a 30000 week.
        assert fresh.total_amount == 10_000


# ---------------------------------------------------------------------------
# Auto-cancel
# ---------------------------------------------------------------------------


class TestAutoCancel:
    @pytest.mark.asyncio
    async def test_long_pause_is_cancelled(self, paid_group, run, session_factory, config, clock) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)

        job = AutoCancelJob(session_factory, config, clock=clock)
        assert (await job.run()).cancelled == []

        clock.advance(days=config.max_pause_days + 1)
        report = await job.run()
        assert report.examined == 1
        assert report.cancelled == [group_id]

        async with transaction(session_factory) as session:
            group = await GroupRepository(session).get(group_id)
            events = await LifecycleEventRepository(session).list_for_group(group_id)
        assert group.status == GroupStatus.CANCELLED.value
        assert events[-1].action == "auto_cancel"
        assert events[-1].principal_id == "system"

    @pytest.mark.asyncio
    async def test_resumed_group_is_left_alone(self, paid_group, run, session_factory, config, clock) -> None:
        group_id = await paid_group()
        await run("confirm_pause", group_id, date(2024, 6, 10), principal_id="consumer-1", confirm=True)
        clock.advance(days=config.max_pause_days - 1)
        await run(
            "confirm_resume",
            group_id,
            clock().date() + timedelta(days=3),
            principal_id="consumer-1",
            confirm=True,
        )
        clock.advance(days=5)
        report = await AutoCancelJob(session_factory, config, clock=clock).run()
        assert report.examined == 0
