"""Subscription group lifecycle: pause, resume and cancel.

States are ``active``, ``paused`` and ``cancelled`` (terminal).  Every
transition has a read-only ``preview_*`` projection and a ``confirm_*``
operation that performs the whole mutation sequence inside the caller's
transaction.  Confirms lock the group row first, so concurrent confirms on
one group serialize, and accept an ``idempotency_key``: a retried confirm
with the same key returns the stored result instead of acting twice.

Resume scenarios are classified against the cycle that was in effect on
the pause date:

==================  =====================================================
``same_cycle``      resume date on or before that cycle's end
``next_cycle_start``  resume date equal to its renewal date
``mid_next_cycle``  resume date inside the cycle starting at renewal
``future_cycle``    anything later
==================  =====================================================

Regardless of the label, a resume date that falls inside an existing cycle
reinstates that cycle's pause-cancelled orders (reclaiming their credits)
and re-bills cycles whose invoices were voided by the pause.  Only when no
cycle covers the resume date is a new one opened and invoiced for the
residual left after credits.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import TypeVar

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.capacity.checker import CapacityChecker
from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import CycleWindow, as_utc, cycle_for, has_notice, local_today
from billing_engine.errors import ConflictError, NotFoundError, ValidationError
from billing_engine.ledger.credit_ledger import CreditLedger, plan_application, to_record
from billing_engine.lifecycle.invoicing import BilledCycle, CycleBiller
from billing_engine.models.billing import CreditRecord
from billing_engine.models.enums import (
    BillingPeriod,
    CreditReason,
    CycleKind,
    GroupStatus,
    InvoiceStatus,
    LifecycleAction,
    OrderStatus,
    RefundPolicy,
    RefundPreference,
    RefundStatus,
    ResumeScenario,
)
from billing_engine.models.lifecycle import (
    CancelPreview,
    CancelResult,
    PausePreview,
    PauseResult,
    ResumePreview,
    ResumeResult,
)
from billing_engine.orders.generator import OrderGenerator, release_capacity
from billing_engine.payments.finalizer import void_unpaid_invoice
from billing_engine.state.repository import (
    CreditRepository,
    CycleRepository,
    GroupRepository,
    InvoiceRepository,
    LifecycleEventRepository,
    OrderRepository,
    RefundRepository,
)
from billing_engine.state.tables import CycleTable, OrderTable, SubscriptionGroupTable

logger = logging.getLogger(__name__)

PAUSE_REASON = "paused"
CANCEL_REASON = "cancelled"
SYSTEM_PRINCIPAL = "system"

_UNPAID = frozenset({InvoiceStatus.PENDING_PAYMENT.value, InvoiceStatus.FAILED.value})

ResultT = TypeVar("ResultT", bound=BaseModel)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def classify_resume(
    cycle_end: date,
    renewal_date: date,
    resume_date: date,
    period: BillingPeriod,
) -> ResumeScenario:
    """Classify *resume_date* against the cycle in effect at pause time."""
    if resume_date <= cycle_end:
        return ResumeScenario.SAME_CYCLE
    if resume_date == renewal_date:
        return ResumeScenario.NEXT_CYCLE_START
    if resume_date <= cycle_for(renewal_date, period).end:
        return ResumeScenario.MID_NEXT_CYCLE
    return ResumeScenario.FUTURE_CYCLE


def refund_options(policy: RefundPolicy) -> list[RefundPreference]:
    if policy == RefundPolicy.REFUND_ONLY:
        return [RefundPreference.REFUND]
    if policy == RefundPolicy.CREDIT_ONLY:
        return [RefundPreference.CREDIT]
    return [RefundPreference.REFUND, RefundPreference.CREDIT]


def resolve_refund_preference(policy: RefundPolicy, requested: RefundPreference | None) -> RefundPreference:
    """Return the settlement form for *policy*, validating the caller's choice.

    Raises
    ------
    ValidationError
        If *requested* is not permitted, or no choice was made under
        ``customer_choice``.
    """
    allowed = refund_options(policy)
    if requested is None:
        if len(allowed) == 1:
            return allowed[0]
        raise ValidationError("refund_preference is required under the customer_choice policy")
    if requested not in allowed:
        raise ValidationError(
            f"refund preference {requested.value} is not permitted by policy {policy.value}",
            policy=policy.value,
        )
    return requested


@dataclass
class _ResumePlan:
    scenario: ResumeScenario
    reinstate: list[OrderTable] = field(default_factory=list)
    reclaimed: list[CreditRecord] = field(default_factory=list)
    paid_cycles: list[CycleTable] = field(default_factory=list)
    rebill_cycles: list[CycleTable] = field(default_factory=list)
    new_window: CycleWindow | None = None
    new_kind: CycleKind = CycleKind.RESUME


class SubscriptionLifecycle:
    """Lifecycle transitions for subscription groups.

    Parameters
    ----------
    session:
        Active session; confirms run inside the caller's transaction.
    config:
        Platform settings (notice hours, refund policy, credit expiry, tz).
    clock:
        Returns the current instant; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: PlatformConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._clock = clock or _utcnow
        self._groups = GroupRepository(session)
        self._cycles = CycleRepository(session)
        self._orders = OrderRepository(session)
        self._invoices = InvoiceRepository(session)
        self._credits = CreditRepository(session)
        self._events = LifecycleEventRepository(session)
        self._refunds = RefundRepository(session)
        self._ledger = CreditLedger(session, config, clock=self._clock)
        self._biller = CycleBiller(session, config, clock=self._clock)
        self._capacity = CapacityChecker(session)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock().astimezone(UTC)

    def _today(self) -> date:
        return local_today(self._now(), self._config.tz)

    async def _load(self, group_id: str, *, for_update: bool = False) -> SubscriptionGroupTable:
        group = await self._groups.get(group_id, for_update=for_update)
        if group is None:
            raise NotFoundError("subscription group", group_id)
        return group

    @staticmethod
    def _require_status(group: SubscriptionGroupTable, expected: GroupStatus, action: LifecycleAction) -> None:
        if group.status == GroupStatus.CANCELLED.value:
            raise ValidationError(f"cannot {action.value} a cancelled subscription", group_id=group.group_id)
        if group.status != expected.value:
            raise ValidationError(
                f"cannot {action.value} a subscription that is {group.status}",
                group_id=group.group_id,
                status=group.status,
            )

    def _require_notice(self, effective: date, notice_hours: int, action: LifecycleAction) -> None:
        if not has_notice(effective, self._now(), notice_hours, self._config.tz):
            raise ValidationError(
                f"{action.value} requires at least {notice_hours}h notice",
                effective_date=effective.isoformat(),
            )

    @staticmethod
    def _require_confirm(confirm: bool, action: LifecycleAction) -> None:
        if not confirm:
            raise ValidationError(f"{action.value} must be explicitly confirmed")

    async def _replay(
        self,
        group_id: str,
        action: LifecycleAction,
        idempotency_key: str | None,
        model: type[ResultT],
    ) -> ResultT | None:
        if not idempotency_key:
            return None
        event = await self._events.find(group_id, action.value, idempotency_key)
        if event is None:
            return None
        logger.info("Replaying %s for group %s (key %s)", action.value, group_id, idempotency_key)
        return model.model_validate(event.result)

    async def _record(
        self,
        group_id: str,
        action: LifecycleAction,
        principal_id: str,
        result: BaseModel,
        idempotency_key: str | None,
    ) -> None:
        await self._events.record(
            group_id=group_id,
            action=action.value,
            principal_id=principal_id,
            result=result.model_dump(mode="json"),
            idempotency_key=idempotency_key,
        )

    async def _pause_cycle(self, group: SubscriptionGroupTable, on: date) -> CycleTable | None:
        return await self._cycles.containing(group.group_id, on) or await self._cycles.latest_for_group(group.group_id)

    async def _void_unpaid(self, group_id: str, *, starting_on: date | None, reason: str) -> int:
        voided = 0
        for cycle in await self._cycles.list_for_group(group_id):
            if starting_on is not None and cycle.cycle_start < starting_on:
                continue
            invoice = await self._invoices.for_cycle(cycle.cycle_id)
            if invoice is not None and invoice.status in _UNPAID:
                if await void_unpaid_invoice(self._session, invoice.invoice_id, reason):
                    voided += 1
        return voided

    # ------------------------------------------------------------------
    # Pause
    # ------------------------------------------------------------------

    async def preview_pause(self, group_id: str, pause_date: date) -> PausePreview:
        group = await self._load(group_id)
        self._require_status(group, GroupStatus.ACTIVE, LifecycleAction.PAUSE)
        self._require_notice(pause_date, self._config.pause_notice_hours, LifecycleAction.PAUSE)

        orders = await self._orders.list_scheduled(group_id, from_date=pause_date)
        cycle = await self._pause_cycle(group, pause_date)
        return PausePreview(
            group_id=group_id,
            pause_date=pause_date,
            cycle_end=cycle.cycle_end if cycle is not None else pause_date,
            orders_count=len(orders),
            credits_count=len(orders),
            total_amount=sum(o.unit_price for o in orders),
            expires_at=self._ledger.expiry_from_now(),
        )

    async def confirm_pause(
        self,
        group_id: str,
        pause_date: date,
        *,
        principal_id: str,
        confirm: bool,
        idempotency_key: str | None = None,
    ) -> PauseResult:
        """Pause *group_id* from *pause_date*.

        Every scheduled order on or after *pause_date* is cancelled and one
        credit per order is issued at its unit price.  Unpaid invoices for
        cycles that start on or after the pause date are voided.
        """
        self._require_confirm(confirm, LifecycleAction.PAUSE)
        group = await self._load(group_id, for_update=True)
        previous = await self._replay(group_id, LifecycleAction.PAUSE, idempotency_key, PauseResult)
        if previous is not None:
            return previous
        self._require_status(group, GroupStatus.ACTIVE, LifecycleAction.PAUSE)
        self._require_notice(pause_date, self._config.pause_notice_hours, LifecycleAction.PAUSE)
        return await self._pause(
            group, pause_date, principal_id=principal_id, action=LifecycleAction.PAUSE, idempotency_key=idempotency_key
        )

    async def pause_for_nonpayment(self, group_id: str, invoice_id: str, *, reason: str) -> PauseResult | None:
        """Void an overdue renewal invoice and pause its group from today, as the system.

        Returns ``None`` when the group was no longer active; the invoice is
        voided either way.
        """
        group = await self._load(group_id, for_update=True)
        await void_unpaid_invoice(self._session, invoice_id, reason)
        if group.status != GroupStatus.ACTIVE.value:
            logger.info("Group %s is %s; overdue invoice %s voided only", group_id, group.status, invoice_id)
            return None
        return await self._pause(
            group, self._today(), principal_id=SYSTEM_PRINCIPAL, action=LifecycleAction.AUTO_PAUSE, idempotency_key=None
        )

    async def _pause(
        self,
        group: SubscriptionGroupTable,
        pause_date: date,
        *,
        principal_id: str,
        action: LifecycleAction,
        idempotency_key: str | None,
    ) -> PauseResult:
        group_id = group.group_id
        scheduled = await self._orders.list_scheduled(group_id, from_date=pause_date)
        cancelled = await self._orders.transition(
            [o.order_id for o in scheduled],
            from_status=OrderStatus.SCHEDULED.value,
            to_status=OrderStatus.CANCELLED.value,
            reason=PAUSE_REASON,
        )
        await release_capacity(self._capacity, cancelled)

        expires_at = self._ledger.expiry_from_now()
        credit_ids: list[str] = []
        for order in cancelled:
            credit_ids.append(
                await self._ledger.issue(
                    consumer_id=group.consumer_id,
                    group_id=group_id,
                    subscription_id=order.subscription_id,
                    amount=order.unit_price,
                    reason=CreditReason.PAUSE,
                    source_order_id=order.order_id,
                    expires_at=expires_at,
                )
            )
        await self._void_unpaid(group_id, starting_on=pause_date, reason="subscription paused")

        group.status = GroupStatus.PAUSED.value
        group.paused_from = pause_date
        group.paused_at = self._now()
        group.resume_on = None
        await self._groups.set_subscription_status(group_id, GroupStatus.PAUSED.value)

        result = PauseResult(
            group_id=group_id,
            pause_date=pause_date,
            orders_cancelled=len(cancelled),
            credits_created=len(credit_ids),
            total_credit_amount=sum(o.unit_price for o in cancelled),
            credit_ids=credit_ids,
        )
        await self._record(group_id, action, principal_id, result, idempotency_key)
        logger.info(
            "Paused group %s from %s (%s): %d orders cancelled, %d credited",
            group_id,
            pause_date.isoformat(),
            action.value,
            result.orders_cancelled,
            result.total_credit_amount,
        )
        return result

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    def _validate_resume(self, group: SubscriptionGroupTable, resume_date: date) -> None:
        self._require_status(group, GroupStatus.PAUSED, LifecycleAction.RESUME)
        if group.paused_from is not None and resume_date < group.paused_from:
            raise ValidationError(
                "resume date is before the pause took effect",
                paused_from=group.paused_from.isoformat(),
            )
        if resume_date < self._today():
            raise ValidationError("resume date is in the past", resume_date=resume_date.isoformat())

    async def _plan_resume(self, group: SubscriptionGroupTable, resume_date: date) -> _ResumePlan:
        period = BillingPeriod(group.period)
        paused_from = group.paused_from or resume_date
        pause_cycle = await self._pause_cycle(group, paused_from)
        if pause_cycle is None:
            scenario = ResumeScenario.FUTURE_CYCLE
        else:
            scenario = classify_resume(pause_cycle.cycle_end, pause_cycle.renewal_date, resume_date, period)
        plan = _ResumePlan(scenario=scenario)

        covering = await self._cycles.containing(group.group_id, resume_date)
        if covering is None:
            plan.new_window = cycle_for(resume_date, period)
            if scenario == ResumeScenario.NEXT_CYCLE_START:
                plan.new_kind = CycleKind.RENEWAL
            return plan

        later = [c for c in await self._cycles.list_for_group(group.group_id) if c.cycle_end >= resume_date]
        for cycle in later:
            invoice = await self._invoices.for_cycle(cycle.cycle_id)
            if invoice is None or invoice.status == InvoiceStatus.PAID.value:
                plan.paid_cycles.append(cycle)
            elif invoice.status == InvoiceStatus.VOID.value:
                plan.rebill_cycles.append(cycle)

        if plan.paid_cycles:
            horizon = max(c.cycle_end for c in plan.paid_cycles)
            cancelled = await self._orders.list_cancelled(
                group.group_id, reason=PAUSE_REASON, from_date=resume_date, to_date=horizon
            )
            paid_ids = {c.cycle_id for c in plan.paid_cycles}
            cancelled = [o for o in cancelled if o.cycle_id in paid_ids]
            credits = await self._credits.list_by_source_orders([o.order_id for o in cancelled])
            now = self._now()
            by_order = {c.source_order_id: to_record(c) for c in credits if as_utc(c.expires_at) > now}
            for order in cancelled:
                credit = by_order.get(order.order_id)
                if credit is None:
                    # Credit already spent or expired: the meal stays cancelled.
                    continue
                plan.reinstate.append(order)
                plan.reclaimed.append(credit)
        return plan

    async def preview_resume(self, group_id: str, resume_date: date) -> ResumePreview:
        group = await self._load(group_id)
        self._validate_resume(group, resume_date)
        plan = await self._plan_resume(group, resume_date)

        reclaimed_value = sum(c.amount for c in plan.reclaimed)
        reclaimed_ids = {c.credit_id for c in plan.reclaimed}
        candidates = [c for c in await self._biller.applicable_credits(group) if c.credit_id not in reclaimed_ids]

        billed_gross = 0
        applied_ids: list[str] = []
        applied_amount = 0
        residual = 0
        targets: list[tuple[date, date]] = [
            (max(resume_date, c.billable_from), c.cycle_end) for c in plan.rebill_cycles
        ]
        if plan.new_window is not None:
            targets.append((resume_date, plan.new_window.end))
        for start, end in targets:
            gross = sum(line.amount for line in await self._biller.price(group, start, end))
            application = plan_application(candidates, gross)
            chosen = set(application.credit_ids)
            candidates = [c for c in candidates if c.credit_id not in chosen]
            billed_gross += gross
            applied_ids.extend(application.credit_ids)
            applied_amount += application.applied_amount
            residual += max(0, gross - application.applied_amount)

        return ResumePreview(
            group_id=group_id,
            resume_date=resume_date,
            scenario=plan.scenario,
            requires_payment=residual > 0,
            estimated_amount=reclaimed_value + billed_gross,
            credits_available=len(candidates) + len(applied_ids) + len(plan.reclaimed),
            credits_to_apply=len(plan.reclaimed) + len(applied_ids),
            credit_amount_applied=reclaimed_value + applied_amount,
            residual_amount=residual,
            new_cycle_start=plan.new_window.start if plan.new_window else None,
            new_cycle_end=plan.new_window.end if plan.new_window else None,
        )

    async def confirm_resume(
        self,
        group_id: str,
        resume_date: date,
        *,
        principal_id: str,
        confirm: bool,
        idempotency_key: str | None = None,
    ) -> ResumeResult:
        """Re-activate a paused group from *resume_date*."""
        self._require_confirm(confirm, LifecycleAction.RESUME)
        group = await self._load(group_id, for_update=True)
        previous = await self._replay(group_id, LifecycleAction.RESUME, idempotency_key, ResumeResult)
        if previous is not None:
            return previous
        self._validate_resume(group, resume_date)
        plan = await self._plan_resume(group, resume_date)

        group.status = GroupStatus.ACTIVE.value
        group.resume_on = resume_date
        group.paused_from = None
        group.paused_at = None
        await self._groups.set_subscription_status(group_id, GroupStatus.ACTIVE.value)

        result = ResumeResult(group_id=group_id, resume_date=resume_date, scenario=plan.scenario)
        reinstated = await self._reinstate(plan.reinstate)
        reclaimed = await self._ledger.consume_for_orders(
            [o.order_id for o in reinstated], consumed_by=f"resume:{group_id}"
        )
        result.orders_reinstated = len(reinstated)
        result.credits_applied = reclaimed.credits_count
        result.credit_amount_applied = reclaimed.applied_amount

        generator = OrderGenerator(self._session, self._config, capacity=self._capacity)
        for cycle in plan.paid_cycles:
            report = await generator.generate_for_cycle(cycle.cycle_id, from_date=resume_date)
            result.orders_created += report.created

        for cycle in plan.rebill_cycles:
            billed = await self._biller.reinvoice(group, cycle, billable_from=resume_date)
            await self._absorb_billing(result, billed, generator, resume_date)

        if plan.new_window is not None:
            billed_new = await self._biller.open_cycle(
                group,
                window=plan.new_window,
                billable_from=resume_date,
                kind=plan.new_kind,
                invoice_when_covered=plan.new_kind == CycleKind.RENEWAL,
            )
            if billed_new is None:
                raise ConflictError("a cycle covering the resume date already exists", group_id=group_id)
            await self._groups.reset_skips(group_id)
            result.new_cycle_id = billed_new.cycle.cycle_id
            await self._absorb_billing(result, billed_new, generator, resume_date)

        await self._record(group_id, LifecycleAction.RESUME, principal_id, result, idempotency_key)
        logger.info(
            "Resumed group %s on %s (%s): reinstated=%d created=%d invoice=%s amount=%d",
            group_id,
            resume_date.isoformat(),
            plan.scenario.value,
            result.orders_reinstated,
            result.orders_created,
            result.invoice_id,
            result.invoice_amount,
        )
        return result

    async def _absorb_billing(
        self, result: ResumeResult, billed: BilledCycle, generator: OrderGenerator, resume_date: date
    ) -> None:
        result.credits_applied += billed.credits.credits_count
        result.credit_amount_applied += billed.credits.applied_amount
        if billed.invoice is not None and billed.invoice.status == InvoiceStatus.PENDING_PAYMENT.value:
            result.invoice_id = result.invoice_id or billed.invoice.invoice_id
            result.invoice_amount += billed.total_amount
            return
        report = await generator.generate_for_cycle(billed.cycle.cycle_id, from_date=resume_date)
        result.orders_created += report.created

    async def _reinstate(self, orders: list[OrderTable]) -> list[OrderTable]:
        """Move pause-cancelled orders back to ``scheduled`` where capacity allows."""
        eligible: list[str] = []
        for order in orders:
            if await self._capacity.reserve(order.vendor_id, order.service_date, order.slot):
                eligible.append(order.order_id)
        restored = await self._orders.transition(
            eligible,
            from_status=OrderStatus.CANCELLED.value,
            to_status=OrderStatus.SCHEDULED.value,
            reason=None,
        )
        restored_ids = {o.order_id for o in restored}
        lost = [o for o in orders if o.order_id in eligible and o.order_id not in restored_ids]
        await release_capacity(self._capacity, lost)
        return restored

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def preview_cancel(self, group_id: str, cancel_date: date) -> CancelPreview:
        group = await self._load(group_id)
        self._validate_cancel(group, cancel_date, enforce_notice=True)

        orders = await self._orders.list_scheduled(group_id, from_date=cancel_date)
        remaining = sum(o.unit_price for o in orders)
        existing = await self._ledger.balance(group_id)
        return CancelPreview(
            group_id=group_id,
            cancel_date=cancel_date,
            orders_count=len(orders),
            remaining_meals_value=remaining,
            existing_credits_value=existing,
            total_refund_credit=max(0, remaining + existing),
            refund_options=refund_options(self._config.refund_policy),
        )

    def _validate_cancel(self, group: SubscriptionGroupTable, cancel_date: date, *, enforce_notice: bool) -> None:
        if group.status == GroupStatus.CANCELLED.value:
            raise ValidationError("subscription is already cancelled", group_id=group.group_id)
        if enforce_notice:
            self._require_notice(cancel_date, self._config.cancel_notice_hours, LifecycleAction.CANCEL)

    async def confirm_cancel(
        self,
        group_id: str,
        cancel_date: date,
        *,
        reason: str,
        refund_preference: RefundPreference | None,
        principal_id: str,
        confirm: bool,
        idempotency_key: str | None = None,
    ) -> CancelResult:
        """Cancel *group_id* from *cancel_date* and settle what is owed.

        The settlement is ``unit_price`` of every scheduled order on or
        after *cancel_date* plus every available credit on the group, issued
        as one ``cancellation`` credit or one refund request.
        """
        self._require_confirm(confirm, LifecycleAction.CANCEL)
        group = await self._load(group_id, for_update=True)
        previous = await self._replay(group_id, LifecycleAction.CANCEL, idempotency_key, CancelResult)
        if previous is not None:
            return previous
        self._validate_cancel(group, cancel_date, enforce_notice=True)
        preference = resolve_refund_preference(self._config.refund_policy, refund_preference)
        return await self._cancel(
            group,
            cancel_date,
            reason=reason,
            preference=preference,
            principal_id=principal_id,
            action=LifecycleAction.CANCEL,
            idempotency_key=idempotency_key,
        )

    async def auto_cancel(self, group_id: str, *, reason: str) -> CancelResult:
        """Cancel a long-paused group today without notice, as the system."""
        group = await self._load(group_id, for_update=True)
        self._require_status(group, GroupStatus.PAUSED, LifecycleAction.AUTO_CANCEL)
        preference = (
            RefundPreference.REFUND
            if self._config.refund_policy == RefundPolicy.REFUND_ONLY
            else RefundPreference.CREDIT
        )
        return await self._cancel(
            group,
            self._today(),
            reason=reason,
            preference=preference,
            principal_id=SYSTEM_PRINCIPAL,
            action=LifecycleAction.AUTO_CANCEL,
            idempotency_key=None,
        )

    async def _cancel(
        self,
        group: SubscriptionGroupTable,
        cancel_date: date,
        *,
        reason: str,
        preference: RefundPreference,
        principal_id: str,
        action: LifecycleAction,
        idempotency_key: str | None,
    ) -> CancelResult:
        group_id = group.group_id
        scheduled = await self._orders.list_scheduled(group_id, from_date=cancel_date)
        cancelled = await self._orders.transition(
            [o.order_id for o in scheduled],
            from_status=OrderStatus.SCHEDULED.value,
            to_status=OrderStatus.CANCELLED.value,
            reason=CANCEL_REASON,
        )
        await release_capacity(self._capacity, cancelled)
        await self._void_unpaid(group_id, starting_on=None, reason="subscription cancelled")

        settled = await self._ledger.consume_all(group_id, consumed_by=f"cancel:{group_id}")
        total = sum(o.unit_price for o in cancelled) + settled.applied_amount

        credit_id: str | None = None
        refund_id: str | None = None
        if total > 0:
            if preference == RefundPreference.CREDIT:
                credit_id = await self._ledger.issue(
                    consumer_id=group.consumer_id,
                    group_id=group_id,
                    amount=total,
                    reason=CreditReason.CANCELLATION,
                )
            else:
                paid = await self._invoices.latest_paid_for_group(group_id)
                refund = await self._refunds.create(
                    group_id=group_id,
                    consumer_id=group.consumer_id,
                    amount=total,
                    status=RefundStatus.PENDING.value,
                    gateway_payment_id=paid.gateway_payment_id if paid is not None else None,
                )
                refund_id = refund.refund_id

        group.status = GroupStatus.CANCELLED.value
        group.cancelled_at = self._now()
        group.cancel_effective_date = cancel_date
        group.cancellation_reason = reason
        await self._groups.set_subscription_status(group_id, GroupStatus.CANCELLED.value)

        result = CancelResult(
            group_id=group_id,
            cancel_date=cancel_date,
            refund_preference=preference,
            refund_amount=total,
            orders_cancelled=len(cancelled),
            credits_settled=settled.credits_count,
            credit_id=credit_id,
            refund_id=refund_id,
        )
        await self._record(group_id, action, principal_id, result, idempotency_key)
        logger.info(
            "Cancelled group %s from %s (%s): %d orders, settlement %d as %s",
            group_id,
            cancel_date.isoformat(),
            action.value,
            result.orders_cancelled,
            total,
            preference.value,
        )
        return result


def max_pause_cutoff(now: datetime, config: PlatformConfig) -> datetime:
    """Groups paused at or before this instant are due for auto-cancellation."""
    return now - timedelta(days=config.max_pause_days)
