"""Vendor holidays declared after orders were generated."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.capacity.checker import CapacityChecker
from billing_engine.config import PlatformConfig
from billing_engine.ledger.credit_ledger import CreditLedger
from billing_engine.models.enums import CreditReason, OrderStatus, Slot
from billing_engine.models.orders import HolidayAdjustment
from billing_engine.orders.generator import release_capacity
from billing_engine.state.repository import OrderRepository, VendorRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VendorHolidayService:
    """Records a holiday and compensates the orders it displaces."""

    def __init__(
        self,
        session: AsyncSession,
        config: PlatformConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._vendors = VendorRepository(session)
        self._orders = OrderRepository(session)
        self._capacity = CapacityChecker(session)
        self._ledger = CreditLedger(session, config, clock=clock or _utcnow)

    async def declare_holiday(
        self,
        vendor_id: str,
        holiday_date: date,
        slot: Slot | None = None,
        *,
        reason: str | None = None,
    ) -> HolidayAdjustment:
        """Close *vendor_id* on *holiday_date* (one slot or the whole day).

        Scheduled orders on that date move to ``skipped_by_vendor``, release
        their capacity and earn the consumer a ``vendor_holiday`` credit at
        the order's unit price.  Future generation skips the date.
        """
        slot_value = slot.value if slot is not None else None
        await self._vendors.add_holiday(vendor_id, holiday_date, slot_value, reason)

        affected = await self._orders.list_scheduled_for_vendor(vendor_id, holiday_date, slot_value)
        skipped = await self._orders.transition(
            [o.order_id for o in affected],
            from_status=OrderStatus.SCHEDULED.value,
            to_status=OrderStatus.SKIPPED_BY_VENDOR.value,
            reason="vendor_holiday",
        )
        await release_capacity(self._capacity, skipped)

        total = 0
        for order in skipped:
            await self._ledger.issue(
                consumer_id=order.consumer_id,
                group_id=order.group_id,
                subscription_id=order.subscription_id,
                amount=order.unit_price,
                reason=CreditReason.VENDOR_HOLIDAY,
                source_order_id=order.order_id,
            )
            total += order.unit_price

        logger.info(
            "Vendor %s holiday on %s (%s): %d orders skipped, %d credited",
            vendor_id,
            holiday_date.isoformat(),
            slot_value or "all slots",
            len(skipped),
            total,
        )
        return HolidayAdjustment(
            vendor_id=vendor_id,
            holiday_date=holiday_date,
            slot=slot_value,
            orders_skipped=len(skipped),
            credits_issued=len(skipped),
            credit_amount=total,
        )
