"""Cycle pricing and invoice creation shared by checkout, renewal and resume.

A cycle is priced per subscription line as ``unit_price x meals``, where
meals are the dates in ``[billable_from, cycle_end]`` on the line's weekday
set that are not vendor holidays (whole-day or for the line's slot).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import CycleWindow, count_scheduled_meals, parse_weekdays
from billing_engine.ledger.credit_ledger import CreditLedger, plan_application, to_record
from billing_engine.models.billing import CreditApplication, CreditRecord, InvoiceLine
from billing_engine.models.enums import CreditReason, CycleKind, GroupStatus, InvoiceStatus, Slot
from billing_engine.state.repository import (
    CreditRepository,
    CycleRepository,
    GroupRepository,
    InvoiceRepository,
    VendorRepository,
)
from billing_engine.state.tables import CycleTable, InvoiceTable, SubscriptionGroupTable, SubscriptionTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class BilledCycle:
    """A newly opened cycle and the invoice (if any) raised for it."""

    cycle: CycleTable
    lines: list[InvoiceLine]
    gross_amount: int
    credits: CreditApplication = field(default_factory=CreditApplication)
    invoice: InvoiceTable | None = None

    @property
    def total_amount(self) -> int:
        return max(0, self.gross_amount - self.credits.applied_amount)


class CycleBiller:
    """Prices cycles and raises invoices within the caller's transaction."""

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
        self._invoices = InvoiceRepository(session)
        self._vendors = VendorRepository(session)
        self._credits = CreditRepository(session)
        self._ledger = CreditLedger(session, config, clock=self._clock)

    async def price(
        self,
        group: SubscriptionGroupTable,
        billable_from: date,
        cycle_end: date,
        subscriptions: Sequence[SubscriptionTable] | None = None,
    ) -> list[InvoiceLine]:
        """Return one priced line per live subscription of *group*."""
        if subscriptions is None:
            subscriptions = await self._groups.list_subscriptions(group.group_id)
        holidays = await self._vendors.holidays_between(group.vendor_id, billable_from, cycle_end)

        lines: list[InvoiceLine] = []
        for sub in subscriptions:
            if sub.status == GroupStatus.CANCELLED.value:
                continue
            closed = [h.holiday_date for h in holidays if h.slot is None or h.slot == sub.slot]
            meals = count_scheduled_meals(billable_from, cycle_end, parse_weekdays(sub.weekdays), closed)
            lines.append(
                InvoiceLine(
                    subscription_id=sub.subscription_id,
                    slot=Slot(sub.slot),
                    meal_count=meals,
                    unit_price=sub.unit_price,
                    amount=meals * sub.unit_price,
                )
            )
        return lines

    async def applicable_credits(self, group: SubscriptionGroupTable) -> list[CreditRecord]:
        """Credits usable against *group*'s invoices.

        The group's own credits plus store credit left over from the same
        consumer's cancelled groups.
        """
        rows = await self._credits.list_available(now=self._ledger.now(), consumer_id=group.consumer_id)
        return [
            to_record(r)
            for r in rows
            if r.group_id == group.group_id or r.reason == CreditReason.CANCELLATION.value
        ]

    async def plan_credits(self, group: SubscriptionGroupTable, amount: int) -> tuple[int, CreditApplication]:
        """Project credit use for *amount* without consuming anything."""
        candidates = await self.applicable_credits(group)
        return len(candidates), plan_application(candidates, amount)

    async def open_cycle(
        self,
        group: SubscriptionGroupTable,
        *,
        window: CycleWindow,
        billable_from: date,
        kind: CycleKind,
        apply_credits: bool = True,
        invoice_when_covered: bool = True,
    ) -> BilledCycle | None:
        """Create the cycle for *window*, price it and raise its invoice.

        Parameters
        ----------
        group:
            The group being billed.
        window:
            Aligned cycle window; ``renewal_date`` is taken from it.
        billable_from:
            First billable date (later than ``window.start`` for partial
            cycles).
        kind:
            Why the cycle was opened.
        apply_credits:
            Deduct available credits from the invoice.
        invoice_when_covered:
            When credits cover the full amount, still record a ``paid``
            zero-total invoice.  When ``False`` no invoice is created.

        Returns
        -------
        BilledCycle | None
            ``None`` if a cycle already starts on ``window.start``.
        """
        cycle = await self._cycles.create(
            group.group_id,
            cycle_start=window.start,
            cycle_end=window.end,
            renewal_date=window.renewal_date,
            billable_from=billable_from,
            kind=kind.value,
        )
        if cycle is None:
            logger.info("Group %s already has a cycle starting %s", group.group_id, window.start.isoformat())
            return None

        return await self._bill(
            group,
            cycle,
            billable_from=billable_from,
            label=kind.value,
            apply_credits=apply_credits,
            invoice_when_covered=invoice_when_covered,
        )

    async def reinvoice(
        self,
        group: SubscriptionGroupTable,
        cycle: CycleTable,
        *,
        billable_from: date,
        invoice_when_covered: bool = False,
    ) -> BilledCycle:
        """Raise a fresh invoice for an existing cycle whose invoice was voided.

        The cycle's ``billable_from`` moves forward to *billable_from* so
        order generation on payment starts from the same date.
        """
        if billable_from > cycle.billable_from:
            await self._cycles.set_billable_from(cycle.cycle_id, billable_from)
        return await self._bill(
            group,
            cycle,
            billable_from=max(billable_from, cycle.billable_from),
            label="reissued",
            apply_credits=True,
            invoice_when_covered=invoice_when_covered,
        )

    async def _bill(
        self,
        group: SubscriptionGroupTable,
        cycle: CycleTable,
        *,
        billable_from: date,
        label: str,
        apply_credits: bool,
        invoice_when_covered: bool,
    ) -> BilledCycle:
        lines = await self.price(group, billable_from, cycle.cycle_end)
        gross = sum(line.amount for line in lines)
        billed = BilledCycle(cycle=cycle, lines=lines, gross_amount=gross)

        if apply_credits and gross > 0:
            candidates = await self.applicable_credits(group)
            billed.credits = await self._ledger.consume(
                [c.credit_id for c in candidates], gross, consumed_by=cycle.cycle_id
            )

        if billed.total_amount == 0 and not invoice_when_covered:
            return billed

        status = InvoiceStatus.PENDING_PAYMENT if billed.total_amount > 0 else InvoiceStatus.PAID
        billed.invoice = await self._invoices.create(
            [line.model_dump(mode="json") for line in lines],
            group_id=group.group_id,
            cycle_id=cycle.cycle_id,
            consumer_id=group.consumer_id,
            vendor_id=group.vendor_id,
            gross_amount=gross,
            credits_applied=billed.credits.applied_amount,
            total_amount=billed.total_amount,
            currency=self._config.currency,
            status=status.value,
            paid_at=self._clock().astimezone(UTC) if status == InvoiceStatus.PAID else None,
        )
        logger.info(
            "Billed %s cycle %s for group %s [%s..%s]: gross=%d credits=%d total=%d",
            label,
            cycle.cycle_id,
            group.group_id,
            billable_from.isoformat(),
            cycle.cycle_end.isoformat(),
            gross,
            billed.credits.applied_amount,
            billed.total_amount,
        )
        return billed

