"""Domain models for the billing engine."""

from billing_engine.models.billing import (
    CheckoutRequest,
    CheckoutResult,
    CreditApplication,
    CreditRecord,
    InvoiceLine,
    PaymentOrder,
    RenewalReport,
    RenewedInvoice,
    SubscriptionLineRequest,
)
from billing_engine.models.enums import (
    BillingPeriod,
    CreditReason,
    CreditStatus,
    GroupStatus,
    InvoiceStatus,
    OrderStatus,
    RefundPolicy,
    RefundPreference,
    ResumeScenario,
    Slot,
    Weekday,
)
from billing_engine.models.lifecycle import (
    AutoCancelReport,
    CancelPreview,
    CancelResult,
    PausePreview,
    PauseResult,
    ResumePreview,
    ResumeResult,
    SkipResult,
)
from billing_engine.models.orders import HolidayAdjustment, OrderGenerationReport, SubscriptionOutcome
from billing_engine.models.payments import Action, ActionKind, FinalizeOutcome, FinalizeResult, PaymentEvent

__all__ = [
    "Action",
    "ActionKind",
    "AutoCancelReport",
    "BillingPeriod",
    "CancelPreview",
    "CancelResult",
    "CheckoutRequest",
    "CheckoutResult",
    "CreditApplication",
    "CreditReason",
    "CreditRecord",
    "CreditStatus",
    "FinalizeOutcome",
    "FinalizeResult",
    "GroupStatus",
    "HolidayAdjustment",
    "InvoiceLine",
    "InvoiceStatus",
    "OrderGenerationReport",
    "OrderStatus",
    "PausePreview",
    "PauseResult",
    "PaymentEvent",
    "PaymentOrder",
    "RefundPolicy",
    "RefundPreference",
    "RenewalReport",
    "RenewedInvoice",
    "ResumePreview",
    "ResumeResult",
    "ResumeScenario",
    "SkipResult",
    "Slot",
    "SubscriptionLineRequest",
    "SubscriptionOutcome",
    "Weekday",
]
