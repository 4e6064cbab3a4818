"""Order generation, customer skips and vendor holidays."""

from billing_engine.orders.generator import (
    ORDER_TRANSITIONS,
    OrderGenerator,
    can_transition,
    release_capacity,
    transition_order,
)
from billing_engine.orders.holidays import VendorHolidayService
from billing_engine.orders.skips import DEFAULT_DELIVERY_WINDOWS, SkipService

__all__ = [
    "DEFAULT_DELIVERY_WINDOWS",
    "ORDER_TRANSITIONS",
    "OrderGenerator",
    "SkipService",
    "VendorHolidayService",
    "can_transition",
    "release_capacity",
    "transition_order",
]
