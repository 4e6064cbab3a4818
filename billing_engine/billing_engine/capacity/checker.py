"""Vendor capacity checks and reservations.

Capacity is the maximum number of booked orders (``scheduled`` or
``delivered``) a vendor accepts for one date and slot.  A limit of 0, or
no slot configuration at all, means unlimited.

:meth:`CapacityChecker.check` is a read-only projection for previews and
operator views.  Order creation goes through :meth:`CapacityChecker.reserve`,
which increments the ``slot_bookings`` counter with a conditional update,
so two concurrent generators cannot both take the last unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.repository import SlotBookingRepository, VendorRepository
from billing_engine.state.tables import VendorSlotTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityStatus:
    available: bool
    current: int
    max_per_day: int
    remaining: int | None  # None when unlimited


class CapacityChecker:
    """Capacity lookups bound to one session.

    Vendor slot configuration is cached for the lifetime of the checker,
    which matches the per-request / per-batch lifecycle of the caller.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._vendors = VendorRepository(session)
        self._bookings = SlotBookingRepository(session)
        self._slot_cache: dict[tuple[str, str], VendorSlotTable | None] = {}

    async def slot_config(self, vendor_id: str, slot: str) -> VendorSlotTable | None:
        key = (vendor_id, slot)
        if key not in self._slot_cache:
            self._slot_cache[key] = await self._vendors.get_slot(vendor_id, slot)
        return self._slot_cache[key]

    async def max_per_day(self, vendor_id: str, slot: str) -> int:
        config = await self.slot_config(vendor_id, slot)
        return config.max_meals_per_day if config is not None else 0

    async def check(self, vendor_id: str, service_date: date, slot: str) -> CapacityStatus:
        """Return whether one more order fits for *vendor_id* on *service_date*/*slot*."""
        limit = await self.max_per_day(vendor_id, slot)
        current = await self._bookings.booked_count(vendor_id, service_date, slot)
        if limit <= 0:
            return CapacityStatus(available=True, current=current, max_per_day=0, remaining=None)
        remaining = max(0, limit - current)
        return CapacityStatus(available=remaining > 0, current=current, max_per_day=limit, remaining=remaining)

    async def reserve(self, vendor_id: str, service_date: date, slot: str) -> bool:
        """Atomically take one unit of capacity.  ``False`` when full."""
        limit = await self.max_per_day(vendor_id, slot)
        reserved = await self._bookings.reserve(vendor_id, service_date, slot, limit)
        if not reserved:
            logger.info(
                "Vendor %s at capacity for %s on %s (max %d)",
                vendor_id,
                slot,
                service_date.isoformat(),
                limit,
            )
        return reserved

    async def release(self, vendor_id: str, service_date: date, slot: str, count: int = 1) -> None:
        await self._bookings.release(vendor_id, service_date, slot, count)
