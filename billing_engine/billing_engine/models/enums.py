"""Enumerations shared across the engine, the API and the CLI."""

from __future__ import annotations

from enum import Enum


class BillingPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Slot(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


class Weekday(str, Enum):
    """Fixed seven-symbol weekday alphabet, ordered like ``date.weekday()``."""

    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"
    SUN = "sun"

    @property
    def index(self) -> int:
        return _WEEKDAY_ORDER.index(self)


_WEEKDAY_ORDER = list(Weekday)


class GroupStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    UPI_AUTOPAY = "upi_autopay"
    MANUAL = "manual"


class CycleKind(str, Enum):
    CHECKOUT = "checkout"
    RENEWAL = "renewal"
    RESUME = "resume"


class InvoiceStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    FAILED = "failed"
    VOID = "void"


class OrderStatus(str, Enum):
    SCHEDULED = "scheduled"
    DELIVERED = "delivered"
    SKIPPED_BY_CUSTOMER = "skipped_by_customer"
    SKIPPED_BY_VENDOR = "skipped_by_vendor"
    FAILED_OPS = "failed_ops"
    CUSTOMER_NO_SHOW = "customer_no_show"
    CANCELLED = "cancelled"


# Orders in these states hold a unit of vendor capacity.
BOOKED_ORDER_STATUSES = frozenset({OrderStatus.SCHEDULED, OrderStatus.DELIVERED})


class CreditStatus(str, Enum):
    AVAILABLE = "available"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class CreditReason(str, Enum):
    PAUSE = "pause"
    SKIP_WITHIN_LIMIT = "skip_within_limit"
    VENDOR_HOLIDAY = "vendor_holiday"
    CANCELLATION = "cancellation"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class RefundPolicy(str, Enum):
    REFUND_ONLY = "refund_only"
    CREDIT_ONLY = "credit_only"
    CUSTOMER_CHOICE = "customer_choice"


class RefundPreference(str, Enum):
    REFUND = "refund"
    CREDIT = "credit"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ResumeScenario(str, Enum):
    SAME_CYCLE = "same_cycle"
    NEXT_CYCLE_START = "next_cycle_start"
    MID_NEXT_CYCLE = "mid_next_cycle"
    FUTURE_CYCLE = "future_cycle"


class LifecycleAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    SKIP = "skip"
    AUTO_CANCEL = "auto_cancel"
    AUTO_PAUSE = "auto_pause"


class SkipReason(str, Enum):
    """Why the order generator did not create an order for a date."""

    ALREADY_EXISTS = "already_exists"
    VENDOR_HOLIDAY = "vendor_holiday"
    AT_CAPACITY = "at_capacity"
    SLOT_DISABLED = "slot_disabled"
