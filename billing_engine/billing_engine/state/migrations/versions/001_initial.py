"""Initial schema for the BellyBox billing store.

Creates the platform and vendor configuration tables, subscription groups
and their meal-slot lines, billing cycles, invoices, payments, refunds,
orders with their slot booking counters, credits, the lifecycle audit
trail and reconciliation gaps.

Revision ID: 001
Revises: None
Create Date: 2024-05-20 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # platform_settings
    # ------------------------------------------------------------------
    op.create_table(
        "platform_settings",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        _timestamp("updated_at"),
    )

    # ------------------------------------------------------------------
    # vendor_slots / vendor_holidays
    # ------------------------------------------------------------------
    op.create_table(
        "vendor_slots",
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("max_meals_per_day", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_window_start", sa.Time(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("vendor_id", "slot"),
        sa.CheckConstraint("slot IN ('breakfast', 'lunch', 'dinner')", name="ck_vendor_slots_slot"),
        sa.CheckConstraint("unit_price >= 0", name="ck_vendor_slots_price"),
        sa.CheckConstraint("max_meals_per_day >= 0", name="ck_vendor_slots_capacity"),
    )

    op.create_table(
        "vendor_holidays",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("holiday_date", sa.Date(), nullable=False),
        sa.Column("slot", sa.String(16), nullable=True),
        sa.Column("reason", sa.String(256), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_vendor_holidays_vendor_date", "vendor_holidays", ["vendor_id", "holiday_date"])

    # ------------------------------------------------------------------
    # subscription_groups / subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_groups",
        sa.Column("group_id", sa.String(64), primary_key=True),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("period", sa.String(16), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("gateway_customer_id", sa.String(128), nullable=True),
        sa.Column("mandate_ref", sa.String(128), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("paused_from", sa.Date(), nullable=True),
        _timestamp("paused_at", nullable=True),
        sa.Column("resume_on", sa.Date(), nullable=True),
        _timestamp("cancelled_at", nullable=True),
        sa.Column("cancel_effective_date", sa.Date(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("status IN ('active', 'paused', 'cancelled')", name="ck_groups_status"),
        sa.CheckConstraint("period IN ('weekly', 'monthly')", name="ck_groups_period"),
    )
    op.create_index("ix_groups_consumer", "subscription_groups", ["consumer_id"])
    op.create_index("ix_groups_status_period", "subscription_groups", ["status", "period"])

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(64), primary_key=True),
        sa.Column(
            "group_id",
            sa.String(64),
            sa.ForeignKey("subscription_groups.group_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("weekdays", sa.String(32), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("skip_allowance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skips_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        _timestamp("created_at"),
        sa.UniqueConstraint("group_id", "slot", name="uq_subscriptions_group_slot"),
        sa.CheckConstraint("skips_used >= 0", name="ck_subscriptions_skips"),
    )
    op.create_index("ix_subscriptions_group", "subscriptions", ["group_id"])

    # ------------------------------------------------------------------
    # subscription_cycles
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_cycles",
        sa.Column("cycle_id", sa.String(64), primary_key=True),
        sa.Column(
            "group_id",
            sa.String(64),
            sa.ForeignKey("subscription_groups.group_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cycle_start", sa.Date(), nullable=False),
        sa.Column("cycle_end", sa.Date(), nullable=False),
        sa.Column("renewal_date", sa.Date(), nullable=False),
        sa.Column("billable_from", sa.Date(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("group_id", "cycle_start", name="uq_cycles_group_start"),
        sa.CheckConstraint("cycle_end >= cycle_start", name="ck_cycles_range"),
        sa.CheckConstraint("billable_from >= cycle_start", name="ck_cycles_billable_from"),
    )
    op.create_index("ix_cycles_group_renewal", "subscription_cycles", ["group_id", "renewal_date"])

    # ------------------------------------------------------------------
    # invoices / invoice_lines
    # ------------------------------------------------------------------
    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(64), primary_key=True),
        sa.Column("group_id", sa.String(64), sa.ForeignKey("subscription_groups.group_id"), nullable=False),
        sa.Column("cycle_id", sa.String(64), sa.ForeignKey("subscription_cycles.cycle_id"), nullable=False),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("gross_amount", sa.Integer(), nullable=False),
        sa.Column("credits_applied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_payment"),
        sa.Column("receipt", sa.String(64), nullable=False),
        sa.Column("gateway_order_id", sa.String(128), nullable=True),
        sa.Column("gateway_payment_id", sa.String(128), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _timestamp("paid_at", nullable=True),
        sa.Column("refunded_amount", sa.Integer(), nullable=True),
        sa.Column("refund_ref", sa.String(128), nullable=True),
        _timestamp("voided_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'paid', 'failed', 'void')",
            name="ck_invoices_status",
        ),
        sa.CheckConstraint("total_amount >= 0", name="ck_invoices_total"),
        sa.CheckConstraint("credits_applied >= 0", name="ck_invoices_credits"),
        sa.UniqueConstraint("receipt", name="uq_invoices_receipt"),
    )
    op.create_index("ix_invoices_group", "invoices", ["group_id"])
    op.create_index("ix_invoices_cycle", "invoices", ["cycle_id"])
    op.create_index("ix_invoices_status", "invoices", ["status"])

    op.create_table(
        "invoice_lines",
        sa.Column("line_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "invoice_id",
            sa.String(64),
            sa.ForeignKey("invoices.invoice_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("subscription_id", sa.String(64), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("meal_count", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
    )
    op.create_index("ix_invoice_lines_invoice", "invoice_lines", ["invoice_id"])

    # ------------------------------------------------------------------
    # payments / refund_requests
    # ------------------------------------------------------------------
    op.create_table(
        "payments",
        sa.Column("gateway_payment_id", sa.String(128), primary_key=True),
        sa.Column("invoice_id", sa.String(64), nullable=False),
        sa.Column("gateway_order_id", sa.String(128), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("raw", _json, nullable=True),
        _timestamp("recorded_at"),
    )
    op.create_index("ix_payments_invoice", "payments", ["invoice_id"])

    op.create_table(
        "refund_requests",
        sa.Column("refund_id", sa.String(64), primary_key=True),
        sa.Column("group_id", sa.String(64), sa.ForeignKey("subscription_groups.group_id"), nullable=False),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("gateway_payment_id", sa.String(128), nullable=True),
        sa.Column("gateway_refund_id", sa.String(128), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("processed_at", nullable=True),
        sa.CheckConstraint("status IN ('pending', 'processed', 'failed')", name="ck_refunds_status"),
        sa.CheckConstraint("amount > 0", name="ck_refunds_amount"),
    )
    op.create_index("ix_refunds_status", "refund_requests", ["status"])

    # ------------------------------------------------------------------
    # orders / slot_bookings
    # ------------------------------------------------------------------
    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(64), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(64),
            sa.ForeignKey("subscriptions.subscription_id"),
            nullable=False,
        ),
        sa.Column("group_id", sa.String(64), nullable=False),
        sa.Column("cycle_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="scheduled"),
        sa.Column("cancellation_reason", sa.String(64), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "subscription_id", "service_date", "slot", name="uq_orders_subscription_date_slot"
        ),
        sa.CheckConstraint(
            "status IN ('scheduled', 'delivered', 'skipped_by_customer', 'skipped_by_vendor', "
            "'failed_ops', 'customer_no_show', 'cancelled')",
            name="ck_orders_status",
        ),
    )
    op.create_index("ix_orders_vendor_date_slot", "orders", ["vendor_id", "service_date", "slot"])
    op.create_index("ix_orders_group_date", "orders", ["group_id", "service_date"])
    op.create_index("ix_orders_cycle", "orders", ["cycle_id"])

    op.create_table(
        "slot_bookings",
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("booked_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("vendor_id", "service_date", "slot"),
        sa.CheckConstraint("booked_count >= 0", name="ck_slot_bookings_nonneg"),
    )

    # ------------------------------------------------------------------
    # credits
    # ------------------------------------------------------------------
    op.create_table(
        "credits",
        sa.Column("credit_id", sa.String(64), primary_key=True),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("group_id", sa.String(64), sa.ForeignKey("subscription_groups.group_id"), nullable=False),
        sa.Column("subscription_id", sa.String(64), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="available"),
        sa.Column("source_order_id", sa.String(64), nullable=True),
        _timestamp("issued_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("consumed_at", nullable=True),
        sa.Column("consumed_by", sa.String(64), nullable=True),
        sa.CheckConstraint("status IN ('available', 'consumed', 'expired')", name="ck_credits_status"),
        sa.CheckConstraint("amount > 0", name="ck_credits_amount"),
    )
    op.create_index("ix_credits_group_status", "credits", ["group_id", "status"])
    op.create_index("ix_credits_subscription_status", "credits", ["subscription_id", "status"])
    op.create_index("ix_credits_expiry", "credits", ["status", "expires_at"])
    op.create_index("ix_credits_source_order", "credits", ["source_order_id"])

    # ------------------------------------------------------------------
    # lifecycle_events / reconciliation_gaps
    # ------------------------------------------------------------------
    op.create_table(
        "lifecycle_events",
        sa.Column("event_id", sa.String(64), primary_key=True),
        sa.Column("group_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("principal_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("result", _json, nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "group_id", "action", "idempotency_key", name="uq_lifecycle_events_idempotency"
        ),
    )
    op.create_index("ix_lifecycle_events_group", "lifecycle_events", ["group_id", "created_at"])

    op.create_table(
        "reconciliation_gaps",
        sa.Column("gap_id", sa.String(64), primary_key=True),
        sa.Column("invoice_id", sa.String(64), nullable=False),
        sa.Column("cycle_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False, server_default="order_generation_failed"),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_by", sa.String(256), nullable=True),
        _timestamp("resolved_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_reconciliation_gaps_unresolved", "reconciliation_gaps", ["resolved", "created_at"])
    op.create_index("ix_reconciliation_gaps_invoice", "reconciliation_gaps", ["invoice_id"])


def downgrade() -> None:
    op.drop_table("reconciliation_gaps")
    op.drop_table("lifecycle_events")
    op.drop_table("credits")
    op.drop_table("slot_bookings")
    op.drop_table("orders")
    op.drop_table("refund_requests")
    op.drop_table("payments")
    op.drop_table("invoice_lines")
    op.drop_table("invoices")
    op.drop_table("subscription_cycles")
    op.drop_table("subscriptions")
    op.drop_table("subscription_groups")
    op.drop_table("vendor_holidays")
    op.drop_table("vendor_slots")
    op.drop_table("platform_settings")
