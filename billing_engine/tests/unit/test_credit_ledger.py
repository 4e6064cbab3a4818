"""Unit tests for billing_engine.ledger.credit_ledger."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
import pytest_asyncio

from billing_engine.errors import ValidationError
from billing_engine.ledger.credit_ledger import CreditLedger, plan_application
from billing_engine.models.billing import CreditRecord
from billing_engine.models.enums import CreditReason, CreditStatus
from billing_engine.state.repository import CreditRepository, GroupRepository

NOW = datetime(2024, 6, 8, 4, 30, tzinfo=UTC)


def _credit(credit_id: str, amount: int, expires_in_days: int) -> CreditRecord:
    return CreditRecord(
        credit_id=credit_id,
        consumer_id="consumer-1",
        group_id="group-1",
        amount=amount,
        reason=CreditReason.PAUSE,
        status=CreditStatus.AVAILABLE,
        issued_at=NOW,
        expires_at=NOW + timedelta(days=expires_in_days),
    )


@pytest_asyncio.fixture()
async def group_id(session) -> str:
    group = await GroupRepository(session).create(
        consumer_id="consumer-1",
        vendor_id="vendor-1",
        period="weekly",
        start_date=date(2024, 6, 10),
    )
    return group.group_id


@pytest.fixture()
def ledger(session, config, clock) -> CreditLedger:
    return CreditLedger(session, config, clock=clock)


# ---------------------------------------------------------------------------
# plan_application (pure)
# ---------------------------------------------------------------------------


class TestPlanApplication:
    def test_soonest_expiring_first(self) -> None:
        credits = [_credit("late", 10_000, 60), _credit("soon", 10_000, 5), _credit("mid", 10_000, 30)]
        plan = plan_application(credits, 20_000)
        assert plan.credit_ids == ["soon", "mid"]
        assert plan.applied_amount == 20_000

    def test_last_credit_may_overshoot(self) -> None:
        credits = [_credit("a", 10_000, 5), _credit("b", 10_000, 6)]
        plan = plan_application(credits, 15_000)
        assert plan.credits_count == 2
        assert plan.applied_amount == 20_000

    def test_uniform_credits_select_ceil(self) -> None:
        credits = [_credit(f"c{i}", 3_000, i + 1) for i in range(10)]
        plan = plan_application(credits, 10_000)
        # ceil(10000 / 3000) == 4
        assert plan.credits_count == 4

    def test_fewer_credits_than_needed(self) -> None:
        credits = [_credit("a", 10_000, 5), _credit("b", 10_000, 6)]
        plan = plan_application(credits, 50_000)
        assert plan.credit_ids == ["a", "b"]
        assert plan.applied_amount == 20_000

    def test_zero_amount_selects_nothing(self) -> None:
        assert plan_application([_credit("a", 10_000, 5)], 0).credits_count == 0


# ---------------------------------------------------------------------------
# Issuance and reads
# ---------------------------------------------------------------------------


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_sets_expiry_from_config(self, ledger, group_id, session) -> None:
        credit_id = await ledger.issue(
            consumer_id="consumer-1", group_id=group_id, amount=10_000, reason=CreditReason.PAUSE
        )
        credits = await ledger.list_available(group_id=group_id)
        assert [c.credit_id for c in credits] == [credit_id]
        assert credits[0].expires_at == NOW + timedelta(days=90)
        assert credits[0].status == CreditStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, ledger, group_id) -> None:
        with pytest.raises(ValidationError):
            await ledger.issue(consumer_id="consumer-1", group_id=group_id, amount=0, reason=CreditReason.PAUSE)

    @pytest.mark.asyncio
    async def test_list_requires_a_filter(self, ledger) -> None:
        with pytest.raises(ValidationError):
            await ledger.list_available()

    @pytest.mark.asyncio
    async def test_balance_sums_available(self, ledger, group_id) -> None:
        for amount in (10_000, 12_000):
            await ledger.issue(consumer_id="consumer-1", group_id=group_id, amount=amount, reason=CreditReason.PAUSE)
        assert await ledger.balance(group_id) == 22_000


# ---------------------------------------------------------------------------
# Consumption
# ---------------------------------------------------------------------------


class TestConsume:
    @pytest.mark.asyncio
    async def test_consumes_whole_credits(self, ledger, group_id, session) -> None:
        ids = [
            await ledger.issue(consumer_id="consumer-1", group_id=group_id, amount=10_000, reason=CreditReason.PAUSE)
            for _ in range(3)
        ]
        applied = await ledger.consume(ids, 15_000, consumed_by="cycle-1")
        assert applied.credits_count == 2
        assert applied.applied_amount == 20_000
        assert await ledger.balance(group_id) == 10_000

        remaining = await CreditRepository(session).list_available(now=NOW, group_id=group_id)
        assert len(remaining) == 1
        assert remaining[0].credit_id in ids
        assert remaining[0].credit_id not in applied.credit_ids

    @pytest.mark.asyncio
    async def test_consumed_credit_not_taken_twice(self, ledger, group_id) -> None:
        credit_id = await ledger.issue(
            consumer_id="consumer-1", group_id=group_id, amount=10_000, reason=CreditReason.PAUSE
        )
        first = await ledger.consume([credit_id], 10_000, consumed_by="cycle-1")
        second = await ledger.consume([credit_id], 10_000, consumed_by="cycle-2")
        assert first.credit_ids == [credit_id]
        assert second.credit_ids == []
        assert second.applied_amount == 0

    @pytest.mark.asyncio
    async def test_consume_all(self, ledger, group_id) -> None:
        for amount in (10_000, 5_000):
            await ledger.issue(consumer_id="consumer-1", group_id=group_id, amount=amount, reason=CreditReason.PAUSE)
        settled = await ledger.consume_all(group_id, consumed_by="cancel")
        assert settled.credits_count == 2
        assert settled.applied_amount == 15_000
        assert await ledger.balance(group_id) == 0

    @pytest.mark.asyncio
    async def test_consume_for_orders(self, ledger, group_id) -> None:
        await ledger.issue(
            consumer_id="consumer-1",
            group_id=group_id,
            amount=10_000,
            reason=CreditReason.PAUSE,
            source_order_id="order-1",
        )
        await ledger.issue(
            consumer_id="consumer-1",
            group_id=group_id,
            amount=10_000,
            reason=CreditReason.PAUSE,
            source_order_id="order-2",
        )
        reclaimed = await ledger.consume_for_orders(["order-1"], consumed_by="resume")
        assert reclaimed.applied_amount == 10_000
        assert await ledger.balance(group_id) == 10_000


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_credits_are_invisible_before_sweep(self, ledger, group_id, clock) -> None:
        await ledger.issue(consumer_id="consumer-1", group_id=group_id, amount=10_000, reason=CreditReason.PAUSE)
        clock.advance(days=91)
        assert await ledger.list_available(group_id=group_id) == []
        assert await ledger.balance(group_id) == 0

    @pytest.mark.asyncio
    async def test_sweep_marks_expired(self, ledger, group_id, clock, session) -> None:
        await ledger.issue(consumer_id="consumer-1", group_id=group_id, amount=10_000, reason=CreditReason.PAUSE)
        await ledger.issue(
            consumer_id="consumer-1",
            group_id=group_id,
            amount=10_000,
            reason=CreditReason.PAUSE,
            expires_at=NOW + timedelta(days=200),
        )
        clock.advance(days=91)
        assert await ledger.expire_due() == 1
        assert await ledger.expire_due() == 0
        assert await ledger.balance(group_id) == 10_000

    @pytest.mark.asyncio
    async def test_expired_credit_cannot_be_consumed(self, ledger, group_id, clock) -> None:
        credit_id = await ledger.issue(
            consumer_id="consumer-1", group_id=group_id, amount=10_000, reason=CreditReason.PAUSE
        )
        clock.advance(days=90)
        applied = await ledger.consume([credit_id], 10_000, consumed_by="cycle-1")
        assert applied.credits_count == 0
