"""Checkout, invoice and renewal models."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, computed_field, field_validator

from billing_engine.models.enums import BillingPeriod, CreditReason, CreditStatus, PaymentMethod, Slot, Weekday


class CreditRecord(BaseModel):
    """Read model of a credit row."""

    credit_id: str
    consumer_id: str
    group_id: str
    subscription_id: str | None = None
    amount: int = Field(..., gt=0)
    reason: CreditReason
    status: CreditStatus
    issued_at: datetime
    expires_at: datetime
    source_order_id: str | None = None


class CreditApplication(BaseModel):
    """Credits selected (or consumed) against an amount."""

    credit_ids: list[str] = Field(default_factory=list)
    applied_amount: int = Field(default=0, ge=0)

    @property
    def credits_count(self) -> int:
        return len(self.credit_ids)


class InvoiceLine(BaseModel):
    subscription_id: str
    slot: Slot
    meal_count: int = Field(..., ge=0)
    unit_price: int = Field(..., ge=0)
    amount: int = Field(..., ge=0)


class SubscriptionLineRequest(BaseModel):
    slot: Slot
    weekdays: list[Weekday] = Field(..., min_length=1)
    skip_allowance: int = Field(default=2, ge=0)

    @field_validator("weekdays")
    @classmethod
    def _unique_weekdays(cls, v: list[Weekday]) -> list[Weekday]:
        if len(set(v)) != len(v):
            raise ValueError("weekdays must not repeat")
        return v


class CheckoutRequest(BaseModel):
    consumer_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    period: BillingPeriod
    start_date: date
    lines: list[SubscriptionLineRequest] = Field(..., min_length=1)
    payment_method: PaymentMethod = PaymentMethod.MANUAL

    @field_validator("lines")
    @classmethod
    def _unique_slots(cls, v: list[SubscriptionLineRequest]) -> list[SubscriptionLineRequest]:
        slots = [line.slot for line in v]
        if len(set(slots)) != len(slots):
            raise ValueError("each slot may appear only once per subscription group")
        return v


class CheckoutResult(BaseModel):
    invoice_id: str
    group_id: str
    cycle_id: str
    total_amount: int = Field(..., ge=0)
    currency: str
    receipt: str
    renewal_date: date
    cycle_start: date
    cycle_end: date
    lines: list[InvoiceLine] = Field(default_factory=list)


class PaymentOrder(BaseModel):
    invoice_id: str
    gateway_order_id: str
    amount: int
    currency: str


class RenewedInvoice(BaseModel):
    invoice_id: str
    group_id: str
    consumer_id: str
    vendor_id: str
    cycle_start: date
    total_amount: int = Field(..., ge=0)
    credits_applied: int = Field(default=0, ge=0)
    status: str


class RenewalReport(BaseModel):
    period: BillingPeriod
    run_date: date
    examined: int = 0
    invoices: list[RenewedInvoice] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict, description="group_id -> reason not renewed")
    errors: dict[str, str] = Field(default_factory=dict, description="group_id -> error")
    aborted: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def count(self) -> int:
        return len(self.invoices)
