"""Order generation: expand a paid cycle into dated delivery orders.

For each subscription line of the cycle's group and each date in
``[max(cycle_start, billable_from), cycle_end]``:

1. dates outside the line's weekday set are ignored;
2. an existing order for ``(subscription_id, date, slot)`` is left alone;
3. vendor holidays (whole day or the line's slot) are skipped;
4. one unit of vendor capacity is reserved, or the date is skipped;
5. a ``scheduled`` order is inserted.

Re-running generation for the same cycle is a no-op: step 2 and the
unique key on ``orders`` both dedupe, and a reservation made for an insert
that lost a race is released again.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.capacity.checker import CapacityChecker
from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import iter_dates, parse_weekdays, weekday_of
from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.models.enums import GroupStatus, OrderStatus, SkipReason
from billing_engine.models.orders import OrderGenerationReport, SkippedDate, SubscriptionOutcome
from billing_engine.state.repository import CycleRepository, GroupRepository, OrderRepository, VendorRepository
from billing_engine.state.tables import OrderTable, SubscriptionGroupTable, SubscriptionTable

logger = logging.getLogger(__name__)

# Day-of-operations transitions.  Every state other than ``scheduled`` is
# terminal from the engine's point of view.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.SCHEDULED: frozenset(
        {
            OrderStatus.DELIVERED,
            OrderStatus.SKIPPED_BY_CUSTOMER,
            OrderStatus.SKIPPED_BY_VENDOR,
            OrderStatus.FAILED_OPS,
            OrderStatus.CUSTOMER_NO_SHOW,
            OrderStatus.CANCELLED,
        }
    ),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


class _HolidayCalendar:
    def __init__(self, whole_days: set[date], slot_days: set[tuple[date, str]]) -> None:
        self._whole_days = whole_days
        self._slot_days = slot_days

    def is_holiday(self, d: date, slot: str) -> bool:
        return d in self._whole_days or (d, slot) in self._slot_days


class OrderGenerator:
    """Generates orders for one cycle at a time within the caller's transaction."""

    def __init__(
        self,
        session: AsyncSession,
        config: PlatformConfig,
        *,
        capacity: CapacityChecker | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._capacity = capacity or CapacityChecker(session)
        self._cycles = CycleRepository(session)
        self._groups = GroupRepository(session)
        self._orders = OrderRepository(session)
        self._vendors = VendorRepository(session)

    async def generate_for_cycle(self, cycle_id: str, *, from_date: date | None = None) -> OrderGenerationReport:
        """Create the missing orders for *cycle_id*.

        Parameters
        ----------
        cycle_id:
            Cycle to expand.  Its invoice is expected to be paid (or fully
            covered by credits); the generator does not re-check payment.
        from_date:
            Optional lower bound, e.g. a resume date inside the cycle.

        Raises
        ------
        NotFoundError
            If the cycle or its group does not exist.
        """
        cycle = await self._cycles.get(cycle_id)
        if cycle is None:
            raise NotFoundError("cycle", cycle_id)
        group = await self._groups.get(cycle.group_id)
        if group is None:
            raise NotFoundError("subscription group", cycle.group_id)

        report = OrderGenerationReport(cycle_id=cycle_id)
        if group.status == GroupStatus.CANCELLED.value:
            logger.info("Group %s is cancelled; no orders generated for cycle %s", group.group_id, cycle_id)
            return report

        start = max(cycle.cycle_start, cycle.billable_from, from_date or cycle.cycle_start)
        end = self._effective_end(group, cycle.cycle_end)
        if end < start:
            return report

        holidays = await self._load_holidays(group.vendor_id, start, end)
        for subscription in await self._groups.list_subscriptions(group.group_id):
            if subscription.status == GroupStatus.CANCELLED.value:
                continue
            outcome = await self._generate_line(group, subscription, cycle_id, start, end, holidays)
            report.outcomes.append(outcome)
            report.created += len(outcome.created)

        logger.info(
            "Generated %d orders for cycle %s (group %s, %d skipped)",
            report.created,
            cycle_id,
            group.group_id,
            report.skipped,
        )
        return report

    # -- internals -----------------------------------------------------

    @staticmethod
    def _effective_end(group: SubscriptionGroupTable, cycle_end: date) -> date:
        if group.status == GroupStatus.PAUSED.value and group.paused_from is not None:
            return min(cycle_end, group.paused_from - timedelta(days=1))
        return cycle_end

    async def _load_holidays(self, vendor_id: str, start: date, end: date) -> _HolidayCalendar:
        whole_days: set[date] = set()
        slot_days: set[tuple[date, str]] = set()
        for holiday in await self._vendors.holidays_between(vendor_id, start, end):
            if holiday.slot is None:
                whole_days.add(holiday.holiday_date)
            else:
                slot_days.add((holiday.holiday_date, holiday.slot))
        return _HolidayCalendar(whole_days, slot_days)

    async def _generate_line(
        self,
        group: SubscriptionGroupTable,
        subscription: SubscriptionTable,
        cycle_id: str,
        start: date,
        end: date,
        holidays: _HolidayCalendar,
    ) -> SubscriptionOutcome:
        outcome = SubscriptionOutcome(subscription_id=subscription.subscription_id, slot=subscription.slot)
        try:
            weekdays = parse_weekdays(subscription.weekdays)
        except ValueError as exc:
            outcome.error = f"invalid weekday set {subscription.weekdays!r}: {exc}"
            logger.error("Subscription %s: %s", subscription.subscription_id, outcome.error)
            return outcome

        slot_config = await self._capacity.slot_config(group.vendor_id, subscription.slot)
        existing = await self._orders.existing_keys(subscription.subscription_id, start, end)

        for d in iter_dates(start, end):
            if weekday_of(d) not in weekdays:
                continue
            if d in existing:
                outcome.skipped.append(SkippedDate(service_date=d, reason=SkipReason.ALREADY_EXISTS))
                continue
            if slot_config is not None and not slot_config.enabled:
                outcome.skipped.append(SkippedDate(service_date=d, reason=SkipReason.SLOT_DISABLED))
                continue
            if holidays.is_holiday(d, subscription.slot):
                outcome.skipped.append(SkippedDate(service_date=d, reason=SkipReason.VENDOR_HOLIDAY))
                continue
            if not await self._capacity.reserve(group.vendor_id, d, subscription.slot):
                outcome.skipped.append(SkippedDate(service_date=d, reason=SkipReason.AT_CAPACITY))
                continue

            order_id = await self._orders.insert_scheduled(
                subscription_id=subscription.subscription_id,
                group_id=group.group_id,
                cycle_id=cycle_id,
                vendor_id=group.vendor_id,
                consumer_id=group.consumer_id,
                service_date=d,
                slot=subscription.slot,
                unit_price=subscription.unit_price,
            )
            if order_id is None:
                # Lost the insert race to a concurrent generator.
                await self._capacity.release(group.vendor_id, d, subscription.slot)
                outcome.skipped.append(SkippedDate(service_date=d, reason=SkipReason.ALREADY_EXISTS))
                continue
            outcome.created.append(d)

        return outcome


async def transition_order(
    session: AsyncSession,
    order: OrderTable,
    target: OrderStatus,
    *,
    reason: str | None = None,
    capacity: CapacityChecker | None = None,
) -> bool:
    """Move one order out of ``scheduled``, releasing capacity when it stops being booked.

    Returns ``False`` if a concurrent caller already moved the order.

    Raises
    ------
    ValidationError
        If *target* is not reachable from the order's current status.
    """
    current = OrderStatus(order.status)
    if not can_transition(current, target):
        raise ValidationError(
            f"order cannot move from {current.value} to {target.value}",
            order_id=order.order_id,
        )
    moved = await OrderRepository(session).transition(
        [order.order_id], from_status=current.value, to_status=target.value, reason=reason
    )
    if not moved:
        return False
    if target != OrderStatus.DELIVERED:
        await (capacity or CapacityChecker(session)).release(order.vendor_id, order.service_date, order.slot)
    return True


async def release_capacity(capacity: CapacityChecker, orders: list[OrderTable]) -> None:
    """Release one unit of capacity per order, grouped by vendor/date/slot."""
    counts: dict[tuple[str, date, str], int] = {}
    for order in orders:
        key = (order.vendor_id, order.service_date, order.slot)
        counts[key] = counts.get(key, 0) + 1
    for (vendor_id, service_date, slot), count in counts.items():
        await capacity.release(vendor_id, service_date, slot, count)
