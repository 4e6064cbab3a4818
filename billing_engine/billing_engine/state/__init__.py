"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_engine.state.database import get_engine, get_session_factory, transaction
from billing_engine.state.repository import (
    CreditRepository,
    CycleRepository,
    GroupRepository,
    InvoiceRepository,
    LifecycleEventRepository,
    OrderRepository,
    PlatformSettingsRepository,
    ReconciliationGapRepository,
    RefundRepository,
    SlotBookingRepository,
    VendorRepository,
)

__all__ = [
    "CreditRepository",
    "CycleRepository",
    "GroupRepository",
    "InvoiceRepository",
    "LifecycleEventRepository",
    "OrderRepository",
    "PlatformSettingsRepository",
    "ReconciliationGapRepository",
    "RefundRepository",
    "SlotBookingRepository",
    "VendorRepository",
    "get_engine",
    "get_session_factory",
    "transaction",
]
