"""Vendor capacity checking."""

from billing_engine.capacity.checker import CapacityChecker, CapacityStatus

__all__ = ["CapacityChecker", "CapacityStatus"]
