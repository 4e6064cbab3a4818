"""Customer meal skips.

A scheduled order may be skipped until ``skip_cutoff_hours_before_slot``
hours before its delivery window opens.  Skips within the subscription's
per-cycle allowance are refunded as a ``skip_within_limit`` credit; skips
beyond it are accepted without a credit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.capacity.checker import CapacityChecker
from billing_engine.config import PlatformConfig
from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.ledger.credit_ledger import CreditLedger
from billing_engine.models.enums import CreditReason, LifecycleAction, OrderStatus, Slot
from billing_engine.models.lifecycle import SkipResult
from billing_engine.orders.generator import transition_order
from billing_engine.state.repository import GroupRepository, LifecycleEventRepository, OrderRepository
from billing_engine.state.tables import OrderTable

logger = logging.getLogger(__name__)

# Used when a vendor has not configured a delivery window for the slot.
DEFAULT_DELIVERY_WINDOWS: dict[Slot, time] = {
    Slot.BREAKFAST: time(8, 0),
    Slot.LUNCH: time(12, 30),
    Slot.DINNER: time(19, 30),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SkipService:
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
        self._orders = OrderRepository(session)
        self._groups = GroupRepository(session)
        self._events = LifecycleEventRepository(session)
        self._capacity = CapacityChecker(session)
        self._ledger = CreditLedger(session, config, clock=self._clock)

    async def skip_cutoff(self, order: OrderTable) -> datetime:
        """Last instant at which *order* may still be skipped."""
        slot_config = await self._capacity.slot_config(order.vendor_id, order.slot)
        window = (
            slot_config.delivery_window_start
            if slot_config is not None and slot_config.delivery_window_start is not None
            else DEFAULT_DELIVERY_WINDOWS[Slot(order.slot)]
        )
        opens = datetime.combine(order.service_date, window, tzinfo=self._config.tz)
        return opens - timedelta(hours=self._config.skip_cutoff_hours_before_slot)

    async def skip_meal(self, order_id: str, *, principal_id: str) -> SkipResult:
        """Skip one scheduled meal.

        Raises
        ------
        NotFoundError
            If the order or its subscription does not exist.
        ValidationError
            If the order is not scheduled or the cutoff has passed.
        """
        order = await self._orders.get(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        if order.status != OrderStatus.SCHEDULED.value:
            raise ValidationError(f"order is {order.status}, only scheduled meals can be skipped", order_id=order_id)
        subscription = await self._groups.get_subscription(order.subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", order.subscription_id)

        now = self._clock().astimezone(UTC)
        cutoff = await self.skip_cutoff(order)
        if now > cutoff:
            raise ValidationError(
                "skip cutoff has passed for this meal",
                order_id=order_id,
                cutoff=cutoff.isoformat(),
            )

        moved = await transition_order(
            self._session, order, OrderStatus.SKIPPED_BY_CUSTOMER, reason="customer_skip", capacity=self._capacity
        )
        if not moved:
            raise ValidationError("order was changed concurrently", order_id=order_id)

        credited = await self._groups.increment_skips_within_allowance(subscription.subscription_id)
        credit_id: str | None = None
        if credited:
            credit_id = await self._ledger.issue(
                consumer_id=order.consumer_id,
                group_id=order.group_id,
                subscription_id=order.subscription_id,
                amount=order.unit_price,
                reason=CreditReason.SKIP_WITHIN_LIMIT,
                source_order_id=order.order_id,
            )
        await self._session.refresh(subscription)

        result = SkipResult(
            order_id=order_id,
            service_date=order.service_date,
            credited=credited,
            credit_id=credit_id,
            credit_amount=order.unit_price if credited else 0,
            skips_remaining=max(0, subscription.skip_allowance - subscription.skips_used),
        )
        await self._events.record(
            group_id=order.group_id,
            action=LifecycleAction.SKIP.value,
            principal_id=principal_id,
            result=result.model_dump(mode="json"),
        )
        logger.info(
            "Order %s skipped on %s (credited=%s, %d skips left)",
            order_id,
            order.service_date.isoformat(),
            credited,
            result.skips_remaining,
        )
        return result
