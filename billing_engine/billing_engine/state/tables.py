"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.

Money columns hold integer minor units (paise).  Business dates use
``DATE``; instants use timezone-aware ``TIMESTAMP`` in UTC.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Platform and vendor configuration
# ---------------------------------------------------------------------------


class PlatformSettingTable(Base):
    """Key/value platform settings layered over environment defaults."""

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class VendorSlotTable(Base):
    """Per-vendor meal slot: price, daily capacity and delivery window."""

    __tablename__ = "vendor_slots"

    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    max_meals_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivery_window_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        PrimaryKeyConstraint("vendor_id", "slot"),
        CheckConstraint("slot IN ('breakfast', 'lunch', 'dinner')", name="ck_vendor_slots_slot"),
        CheckConstraint("unit_price >= 0", name="ck_vendor_slots_price"),
        CheckConstraint("max_meals_per_day >= 0", name="ck_vendor_slots_capacity"),
    )


class VendorHolidayTable(Base):
    """Vendor closure for a whole day (``slot`` NULL) or a single slot."""

    __tablename__ = "vendor_holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_vendor_holidays_vendor_date", "vendor_id", "holiday_date"),)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionGroupTable(Base):
    """One vendor-consumer commercial relationship."""

    __tablename__ = "subscription_groups"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    gateway_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mandate_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    paused_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resume_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'paused', 'cancelled')", name="ck_groups_status"),
        CheckConstraint("period IN ('weekly', 'monthly')", name="ck_groups_period"),
        Index("ix_groups_consumer", "consumer_id"),
        Index("ix_groups_status_period", "status", "period"),
    )


class SubscriptionTable(Base):
    """One meal-slot line within a subscription group."""

    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscription_groups.group_id", ondelete="CASCADE"), nullable=False
    )
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    weekdays: Mapped[str] = mapped_column(String(32), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    skip_allowance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skips_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "slot", name="uq_subscriptions_group_slot"),
        CheckConstraint("skips_used >= 0", name="ck_subscriptions_skips"),
        Index("ix_subscriptions_group", "group_id"),
    )


class CycleTable(Base):
    """Append-only history of billing cycles for a group."""

    __tablename__ = "subscription_cycles"

    cycle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscription_groups.group_id", ondelete="CASCADE"), nullable=False
    )
    cycle_start: Mapped[date] = mapped_column(Date, nullable=False)
    cycle_end: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    billable_from: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "cycle_start", name="uq_cycles_group_start"),
        CheckConstraint("cycle_end >= cycle_start", name="ck_cycles_range"),
        CheckConstraint("billable_from >= cycle_start", name="ck_cycles_billable_from"),
        Index("ix_cycles_group_renewal", "group_id", "renewal_date"),
    )


# ---------------------------------------------------------------------------
# Invoices and payments
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Payment obligation tied to a cycle."""

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(64), ForeignKey("subscription_groups.group_id"), nullable=False)
    cycle_id: Mapped[str] = mapped_column(String(64), ForeignKey("subscription_cycles.cycle_id"), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending_payment")
    receipt: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_payment', 'paid', 'failed', 'void')",
            name="ck_invoices_status",
        ),
        CheckConstraint("total_amount >= 0", name="ck_invoices_total"),
        CheckConstraint("credits_applied >= 0", name="ck_invoices_credits"),
        UniqueConstraint("receipt", name="uq_invoices_receipt"),
        Index("ix_invoices_group", "group_id"),
        Index("ix_invoices_cycle", "cycle_id"),
        Index("ix_invoices_status", "status"),
    )


class InvoiceLineTable(Base):
    """Per-subscription line of an invoice."""

    __tablename__ = "invoice_lines"

    line_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("invoices.invoice_id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    meal_count: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("ix_invoice_lines_invoice", "invoice_id"),)


class PaymentTable(Base):
    """Gateway payment references recorded by the finalizer."""

    __tablename__ = "payments"

    gateway_payment_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    raw: Mapped[Any | None] = mapped_column(_JsonType, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_payments_invoice", "invoice_id"),)


class RefundRequestTable(Base):
    """Bank refund owed to a consumer after cancellation."""

    __tablename__ = "refund_requests"

    refund_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(64), ForeignKey("subscription_groups.group_id"), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    gateway_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'processed', 'failed')", name="ck_refunds_status"),
        CheckConstraint("amount > 0", name="ck_refunds_amount"),
        Index("ix_refunds_status", "status"),
    )


# ---------------------------------------------------------------------------
# Orders and capacity
# ---------------------------------------------------------------------------


class OrderTable(Base):
    """One dated, slotted delivery obligation."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscriptions.subscription_id"), nullable=False
    )
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cycle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="scheduled")
    cancellation_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "service_date", "slot", name="uq_orders_subscription_date_slot"),
        CheckConstraint(
            "status IN ('scheduled', 'delivered', 'skipped_by_customer', 'skipped_by_vendor', "
            "'failed_ops', 'customer_no_show', 'cancelled')",
            name="ck_orders_status",
        ),
        Index("ix_orders_vendor_date_slot", "vendor_id", "service_date", "slot"),
        Index("ix_orders_group_date", "group_id", "service_date"),
        Index("ix_orders_cycle", "cycle_id"),
    )


class SlotBookingTable(Base):
    """Booked-order counter per vendor, date and slot.

    Incremented with a conditional update when an order is created and
    decremented when a booked order leaves the booked states, so the
    capacity limit is enforced by the store rather than by a prior read.
    """

    __tablename__ = "slot_bookings"

    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        PrimaryKeyConstraint("vendor_id", "service_date", "slot"),
        CheckConstraint("booked_count >= 0", name="ck_slot_bookings_nonneg"),
    )


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditTable(Base):
    """Monetary credit issued to a consumer."""

    __tablename__ = "credits"

    credit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    group_id: Mapped[str] = mapped_column(String(64), ForeignKey("subscription_groups.group_id"), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="available")
    source_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('available', 'consumed', 'expired')", name="ck_credits_status"),
        CheckConstraint("amount > 0", name="ck_credits_amount"),
        Index("ix_credits_group_status", "group_id", "status"),
        Index("ix_credits_subscription_status", "subscription_id", "status"),
        Index("ix_credits_expiry", "status", "expires_at"),
        Index("ix_credits_source_order", "source_order_id"),
    )


# ---------------------------------------------------------------------------
# Audit and reconciliation
# ---------------------------------------------------------------------------


class LifecycleEventTable(Base):
    """Audit trail of confirmed lifecycle transitions.

    The unique key on ``(group_id, action, idempotency_key)`` makes a
    retried confirm return its original result instead of re-applying.
    """

    __tablename__ = "lifecycle_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    principal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    result: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "action", "idempotency_key", name="uq_lifecycle_events_idempotency"),
        Index("ix_lifecycle_events_group", "group_id", "created_at"),
    )


class ReconciliationGapTable(Base):
    """Payment the finalizer could not carry through; needs operator action."""

    __tablename__ = "reconciliation_gaps"

    gap_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cycle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="order_generation_failed")
    detail: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_gaps_unresolved", "resolved", "created_at"),
        Index("ix_reconciliation_gaps_invoice", "invoice_id"),
    )
