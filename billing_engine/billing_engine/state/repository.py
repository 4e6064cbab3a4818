"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes call ``session.flush()``
so generated defaults are populated; the caller commits (usually through
:func:`billing_engine.state.database.transaction`).

Status changes that double as concurrency gates (invoice finalization,
order cancellation, credit consumption, capacity reservation) are written
as conditional ``UPDATE ... WHERE <expected state>`` statements.  The
database re-evaluates the predicate under its row lock, so two concurrent
callers can never both observe and act on the same prior state.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.database import dialect_name
from billing_engine.state.tables import (
    CreditTable,
    CycleTable,
    InvoiceLineTable,
    InvoiceTable,
    LifecycleEventTable,
    OrderTable,
    PaymentTable,
    PlatformSettingTable,
    ReconciliationGapTable,
    RefundRequestTable,
    SlotBookingTable,
    SubscriptionGroupTable,
    SubscriptionTable,
    VendorHolidayTable,
    VendorSlotTable,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names of the unique constraint used for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``; ``rowcount`` is 0 when
    the row already existed.
    """
    stmt: Any
    if dialect_name(session) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# PlatformSettingsRepository
# ---------------------------------------------------------------------------


class PlatformSettingsRepository:
    """Key/value access to the ``platform_settings`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_all(self) -> dict[str, str]:
        result = await self._session.execute(select(PlatformSettingTable))
        return {row.key: row.value for row in result.scalars().all()}

    async def set(self, key: str, value: str) -> None:
        row = await self._session.get(PlatformSettingTable, key)
        if row is None:
            self._session.add(PlatformSettingTable(key=key, value=value))
        else:
            row.value = value
        await self._session.flush()


# ---------------------------------------------------------------------------
# VendorRepository
# ---------------------------------------------------------------------------


class VendorRepository:
    """Vendor slot configuration and holiday calendar."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_slot(self, vendor_id: str, slot: str) -> VendorSlotTable | None:
        return await self._session.get(VendorSlotTable, (vendor_id, slot))

    async def list_slots(self, vendor_id: str) -> list[VendorSlotTable]:
        stmt = select(VendorSlotTable).where(VendorSlotTable.vendor_id == vendor_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_slot(
        self,
        vendor_id: str,
        slot: str,
        *,
        unit_price: int,
        max_meals_per_day: int = 0,
        delivery_window_start: Any = None,
        enabled: bool = True,
    ) -> VendorSlotTable:
        row = await self.get_slot(vendor_id, slot)
        if row is None:
            row = VendorSlotTable(vendor_id=vendor_id, slot=slot)
            self._session.add(row)
        row.unit_price = unit_price
        row.max_meals_per_day = max_meals_per_day
        row.delivery_window_start = delivery_window_start
        row.enabled = enabled
        await self._session.flush()
        return row

    async def holidays_between(self, vendor_id: str, start: date, end: date) -> list[VendorHolidayTable]:
        stmt = (
            select(VendorHolidayTable)
            .where(
                VendorHolidayTable.vendor_id == vendor_id,
                VendorHolidayTable.holiday_date >= start,
                VendorHolidayTable.holiday_date <= end,
            )
            .order_by(VendorHolidayTable.holiday_date)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add_holiday(
        self, vendor_id: str, holiday_date: date, slot: str | None = None, reason: str | None = None
    ) -> VendorHolidayTable:
        row = VendorHolidayTable(vendor_id=vendor_id, holiday_date=holiday_date, slot=slot, reason=reason)
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# GroupRepository
# ---------------------------------------------------------------------------


class GroupRepository:
    """Subscription groups and their subscription lines."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, group_id: str, *, for_update: bool = False) -> SubscriptionGroupTable | None:
        stmt = select(SubscriptionGroupTable).where(SubscriptionGroupTable.group_id == group_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **values: Any) -> SubscriptionGroupTable:
        row = SubscriptionGroupTable(group_id=values.pop("group_id", None) or new_id(), **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def add_subscription(self, group_id: str, **values: Any) -> SubscriptionTable:
        row = SubscriptionTable(
            subscription_id=values.pop("subscription_id", None) or new_id(),
            group_id=group_id,
            **values,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_subscriptions(self, group_id: str) -> list[SubscriptionTable]:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.group_id == group_id)
            .order_by(SubscriptionTable.slot)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_subscription(self, subscription_id: str) -> SubscriptionTable | None:
        return await self._session.get(SubscriptionTable, subscription_id)

    async def set_subscription_status(self, group_id: str, status: str) -> None:
        stmt = update(SubscriptionTable).where(SubscriptionTable.group_id == group_id).values(status=status)
        await self._session.execute(stmt)
        await self._session.flush()

    async def reset_skips(self, group_id: str) -> None:
        stmt = update(SubscriptionTable).where(SubscriptionTable.group_id == group_id).values(skips_used=0)
        await self._session.execute(stmt)

    async def increment_skips_within_allowance(self, subscription_id: str) -> bool:
        """Atomically consume one skip from the allowance.

        Returns ``False`` when the allowance is already exhausted.
        """
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.subscription_id == subscription_id,
                SubscriptionTable.skips_used < SubscriptionTable.skip_allowance,
            )
            .values(skips_used=SubscriptionTable.skips_used + 1)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_renewable_ids(
        self,
        period: str,
        *,
        after_group_id: str | None = None,
        limit: int = 100,
    ) -> list[str]:
        """Return ids of non-cancelled groups with *period*, keyset-paginated."""
        stmt = (
            select(SubscriptionGroupTable.group_id)
            .where(
                SubscriptionGroupTable.period == period,
                SubscriptionGroupTable.status != "cancelled",
            )
            .order_by(SubscriptionGroupTable.group_id)
            .limit(limit)
        )
        if after_group_id is not None:
            stmt = stmt.where(SubscriptionGroupTable.group_id > after_group_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_paused_since(self, cutoff: datetime) -> list[SubscriptionGroupTable]:
        stmt = (
            select(SubscriptionGroupTable)
            .where(
                SubscriptionGroupTable.status == "paused",
                SubscriptionGroupTable.resume_on.is_(None),
                SubscriptionGroupTable.paused_at <= cutoff,
            )
            .order_by(SubscriptionGroupTable.paused_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# CycleRepository
# ---------------------------------------------------------------------------


class CycleRepository:
    """Append-only billing cycle history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, cycle_id: str) -> CycleTable | None:
        return await self._session.get(CycleTable, cycle_id)

    async def create(
        self,
        group_id: str,
        *,
        cycle_start: date,
        cycle_end: date,
        renewal_date: date,
        billable_from: date,
        kind: str,
    ) -> CycleTable | None:
        """Insert a cycle, returning ``None`` if one already starts on *cycle_start*."""
        cycle_id = new_id()
        result = await _dialect_upsert_nothing(
            self._session,
            CycleTable,
            values={
                "cycle_id": cycle_id,
                "group_id": group_id,
                "cycle_start": cycle_start,
                "cycle_end": cycle_end,
                "renewal_date": renewal_date,
                "billable_from": billable_from,
                "kind": kind,
                "created_at": datetime.now(UTC),
            },
            index_elements=["group_id", "cycle_start"],
        )
        await self._session.flush()
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            return None
        return await self.get(cycle_id)

    async def latest_for_group(self, group_id: str) -> CycleTable | None:
        stmt = (
            select(CycleTable)
            .where(CycleTable.group_id == group_id)
            .order_by(CycleTable.cycle_start.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def containing(self, group_id: str, d: date) -> CycleTable | None:
        stmt = (
            select(CycleTable)
            .where(
                CycleTable.group_id == group_id,
                CycleTable.cycle_start <= d,
                CycleTable.cycle_end >= d,
            )
            .order_by(CycleTable.cycle_start.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_group(self, group_id: str) -> list[CycleTable]:
        stmt = select(CycleTable).where(CycleTable.group_id == group_id).order_by(CycleTable.cycle_start)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def set_billable_from(self, cycle_id: str, billable_from: date) -> None:
        stmt = update(CycleTable).where(CycleTable.cycle_id == cycle_id).values(billable_from=billable_from)
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """Invoices, their lines and the payments recorded against them."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, invoice_id: str, *, for_update: bool = False) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.invoice_id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, lines: Sequence[dict[str, Any]], **values: Any) -> InvoiceTable:
        invoice_id = values.pop("invoice_id", None) or new_id()
        receipt = values.pop("receipt", None) or f"rcpt_{invoice_id[:20]}"
        row = InvoiceTable(invoice_id=invoice_id, receipt=receipt, **values)
        self._session.add(row)
        # No relationship orders the inserts; the invoice must exist before its lines.
        await self._session.flush()
        self._session.add_all([InvoiceLineTable(invoice_id=invoice_id, **line) for line in lines])
        await self._session.flush()
        return row

    async def get_lines(self, invoice_id: str) -> list[InvoiceLineTable]:
        stmt = (
            select(InvoiceLineTable)
            .where(InvoiceLineTable.invoice_id == invoice_id)
            .order_by(InvoiceLineTable.line_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def for_cycle(self, cycle_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.cycle_id == cycle_id)
            .order_by(InvoiceTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_paid_for_group(self, group_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.group_id == group_id,
                InvoiceTable.status == "paid",
                InvoiceTable.gateway_payment_id.is_not(None),
            )
            .order_by(InvoiceTable.paid_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        invoice_id: str,
        *,
        from_statuses: Sequence[str],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the invoice status.

        Returns ``True`` only for the caller whose update matched one of
        *from_statuses*; any concurrent or repeated caller gets ``False``.
        """
        stmt = (
            update(InvoiceTable)
            .where(
                InvoiceTable.invoice_id == invoice_id,
                InvoiceTable.status.in_(list(from_statuses)),
            )
            .values(status=to_status, updated_at=datetime.now(UTC), **fields)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def set_gateway_order(self, invoice_id: str, gateway_order_id: str) -> None:
        stmt = (
            update(InvoiceTable)
            .where(InvoiceTable.invoice_id == invoice_id)
            .values(gateway_order_id=gateway_order_id, updated_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def record_payment(
        self,
        *,
        gateway_payment_id: str,
        invoice_id: str,
        gateway_order_id: str | None,
        event_type: str,
        amount: int | None,
        status: str,
        raw: dict[str, Any] | None = None,
    ) -> bool:
        """Record a gateway payment reference.  Returns ``False`` if already known."""
        result = await _dialect_upsert_nothing(
            self._session,
            PaymentTable,
            values={
                "gateway_payment_id": gateway_payment_id,
                "invoice_id": invoice_id,
                "gateway_order_id": gateway_order_id,
                "event_type": event_type,
                "amount": amount,
                "status": status,
                "raw": raw,
                "recorded_at": datetime.now(UTC),
            },
            index_elements=["gateway_payment_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_overdue_renewals(
        self,
        due_on_or_before: date,
        *,
        after_invoice_id: str | None = None,
        limit: int = 100,
    ) -> list[tuple[InvoiceTable, date]]:
        """Return unpaid renewal invoices with the start date of the cycle they bill.

        Only cycles starting on or before *due_on_or_before* are included,
        keyset-paginated by ``invoice_id``.
        """
        stmt = (
            select(InvoiceTable, CycleTable.cycle_start)
            .join(CycleTable, CycleTable.cycle_id == InvoiceTable.cycle_id)
            .where(
                InvoiceTable.status == "pending_payment",
                CycleTable.kind == "renewal",
                CycleTable.cycle_start <= due_on_or_before,
            )
            .order_by(InvoiceTable.invoice_id)
            .limit(limit)
        )
        if after_invoice_id is not None:
            stmt = stmt.where(InvoiceTable.invoice_id > after_invoice_id)
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def claim_retry(self, invoice_id: str, *, expected_count: int, at: datetime) -> bool:
        """Count one payment retry if the invoice is still unpaid at *expected_count* retries."""
        stmt = (
            update(InvoiceTable)
            .where(
                InvoiceTable.invoice_id == invoice_id,
                InvoiceTable.status == "pending_payment",
                InvoiceTable.retry_count == expected_count,
            )
            .values(retry_count=expected_count + 1, last_retry_at=at, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# OrderRepository
# ---------------------------------------------------------------------------


class OrderRepository:
    """Dated delivery orders keyed by ``(subscription_id, service_date, slot)``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, order_id: str) -> OrderTable | None:
        return await self._session.get(OrderTable, order_id)

    async def find(self, subscription_id: str, service_date: date, slot: str) -> OrderTable | None:
        stmt = select(OrderTable).where(
            OrderTable.subscription_id == subscription_id,
            OrderTable.service_date == service_date,
            OrderTable.slot == slot,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def existing_keys(self, subscription_id: str, start: date, end: date) -> set[date]:
        stmt = select(OrderTable.service_date).where(
            OrderTable.subscription_id == subscription_id,
            OrderTable.service_date >= start,
            OrderTable.service_date <= end,
        )
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def insert_scheduled(self, **values: Any) -> str | None:
        """Insert a ``scheduled`` order; ``None`` if the key already exists."""
        order_id = new_id()
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            OrderTable,
            values={
                "order_id": order_id,
                "status": "scheduled",
                "created_at": now,
                "updated_at": now,
                **values,
            },
            index_elements=["subscription_id", "service_date", "slot"],
        )
        await self._session.flush()
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            return None
        return order_id

    async def list_scheduled(
        self,
        group_id: str,
        *,
        from_date: date,
        to_date: date | None = None,
    ) -> list[OrderTable]:
        stmt = select(OrderTable).where(
            OrderTable.group_id == group_id,
            OrderTable.status == "scheduled",
            OrderTable.service_date >= from_date,
        )
        if to_date is not None:
            stmt = stmt.where(OrderTable.service_date <= to_date)
        result = await self._session.execute(stmt.order_by(OrderTable.service_date, OrderTable.slot))
        return list(result.scalars().all())

    async def list_for_cycle(self, cycle_id: str) -> list[OrderTable]:
        stmt = (
            select(OrderTable)
            .where(OrderTable.cycle_id == cycle_id)
            .order_by(OrderTable.service_date, OrderTable.slot)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_cancelled(
        self, group_id: str, *, reason: str, from_date: date, to_date: date
    ) -> list[OrderTable]:
        stmt = (
            select(OrderTable)
            .where(
                OrderTable.group_id == group_id,
                OrderTable.status == "cancelled",
                OrderTable.cancellation_reason == reason,
                OrderTable.service_date >= from_date,
                OrderTable.service_date <= to_date,
            )
            .order_by(OrderTable.service_date, OrderTable.slot)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_scheduled_for_vendor(
        self, vendor_id: str, service_date: date, slot: str | None = None
    ) -> list[OrderTable]:
        stmt = select(OrderTable).where(
            OrderTable.vendor_id == vendor_id,
            OrderTable.service_date == service_date,
            OrderTable.status == "scheduled",
        )
        if slot is not None:
            stmt = stmt.where(OrderTable.slot == slot)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        order_ids: Sequence[str],
        *,
        from_status: str,
        to_status: str,
        reason: str | None = None,
    ) -> list[OrderTable]:
        """Move orders from *from_status* to *to_status*.

        Returns the orders that actually transitioned; orders already
        moved by a concurrent caller are left out.
        """
        if not order_ids:
            return []
        stmt = (
            update(OrderTable)
            .where(OrderTable.order_id.in_(list(order_ids)), OrderTable.status == from_status)
            .values(status=to_status, cancellation_reason=reason, updated_at=datetime.now(UTC))
            .returning(OrderTable.order_id)
        )
        result = await self._session.execute(stmt)
        moved = list(result.scalars().all())
        await self._session.flush()
        if not moved:
            return []
        fetched = await self._session.execute(
            select(OrderTable).where(OrderTable.order_id.in_(moved)).execution_options(populate_existing=True)
        )
        return sorted(fetched.scalars().all(), key=lambda o: (o.service_date, o.slot))


# ---------------------------------------------------------------------------
# SlotBookingRepository
# ---------------------------------------------------------------------------


class SlotBookingRepository:
    """Store-level capacity counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def booked_count(self, vendor_id: str, service_date: date, slot: str) -> int:
        row = await self._session.get(SlotBookingTable, (vendor_id, service_date, slot), populate_existing=True)
        return row.booked_count if row is not None else 0

    async def reserve(self, vendor_id: str, service_date: date, slot: str, max_per_day: int) -> bool:
        """Take one unit of capacity; ``False`` when the slot is full.

        ``max_per_day`` of 0 means unlimited.
        """
        await _dialect_upsert_nothing(
            self._session,
            SlotBookingTable,
            values={"vendor_id": vendor_id, "service_date": service_date, "slot": slot, "booked_count": 0},
            index_elements=["vendor_id", "service_date", "slot"],
        )
        conditions = [
            SlotBookingTable.vendor_id == vendor_id,
            SlotBookingTable.service_date == service_date,
            SlotBookingTable.slot == slot,
        ]
        if max_per_day > 0:
            conditions.append(SlotBookingTable.booked_count < max_per_day)
        stmt = (
            update(SlotBookingTable)
            .where(and_(*conditions))
            .values(booked_count=SlotBookingTable.booked_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, vendor_id: str, service_date: date, slot: str, count: int = 1) -> None:
        stmt = (
            update(SlotBookingTable)
            .where(
                SlotBookingTable.vendor_id == vendor_id,
                SlotBookingTable.service_date == service_date,
                SlotBookingTable.slot == slot,
                SlotBookingTable.booked_count >= count,
            )
            .values(booked_count=SlotBookingTable.booked_count - count)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# CreditRepository
# ---------------------------------------------------------------------------


class CreditRepository:
    """Credit rows.  Business rules live in :mod:`billing_engine.ledger`."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, **values: Any) -> CreditTable:
        row = CreditTable(credit_id=values.pop("credit_id", None) or new_id(), **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_available(
        self,
        *,
        now: datetime,
        group_id: str | None = None,
        subscription_id: str | None = None,
        consumer_id: str | None = None,
        credit_ids: Sequence[str] | None = None,
    ) -> list[CreditTable]:
        stmt = select(CreditTable).where(CreditTable.status == "available", CreditTable.expires_at > now)
        if credit_ids is not None:
            stmt = stmt.where(CreditTable.credit_id.in_(list(credit_ids)))
        if group_id is not None:
            stmt = stmt.where(CreditTable.group_id == group_id)
        if subscription_id is not None:
            stmt = stmt.where(CreditTable.subscription_id == subscription_id)
        if consumer_id is not None:
            stmt = stmt.where(CreditTable.consumer_id == consumer_id)
        stmt = stmt.order_by(CreditTable.expires_at, CreditTable.issued_at, CreditTable.credit_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_by_source_orders(self, order_ids: Sequence[str], *, status: str = "available") -> list[CreditTable]:
        if not order_ids:
            return []
        stmt = select(CreditTable).where(
            CreditTable.source_order_id.in_(list(order_ids)),
            CreditTable.status == status,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def mark_consumed(
        self, credit_ids: Sequence[str], *, consumed_by: str, now: datetime
    ) -> list[str]:
        """Consume credits that are still available; returns the ids consumed."""
        if not credit_ids:
            return []
        stmt = (
            update(CreditTable)
            .where(
                CreditTable.credit_id.in_(list(credit_ids)),
                CreditTable.status == "available",
                CreditTable.expires_at > now,
            )
            .values(status="consumed", consumed_at=now, consumed_by=consumed_by)
            .returning(CreditTable.credit_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        consumed = list(result.scalars().all())
        await self._session.flush()
        return consumed

    async def expire_due(self, now: datetime) -> int:
        stmt = (
            update(CreditTable)
            .where(CreditTable.status == "available", CreditTable.expires_at <= now)
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def balance(self, *, now: datetime, group_id: str) -> int:
        stmt = select(func.coalesce(func.sum(CreditTable.amount), 0)).where(
            CreditTable.group_id == group_id,
            CreditTable.status == "available",
            CreditTable.expires_at > now,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# RefundRepository
# ---------------------------------------------------------------------------


class RefundRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> RefundRequestTable:
        row = RefundRequestTable(refund_id=values.pop("refund_id", None) or new_id(), **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_pending(self, limit: int = 100) -> list[RefundRequestTable]:
        stmt = (
            select(RefundRequestTable)
            .where(RefundRequestTable.status == "pending")
            .order_by(RefundRequestTable.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def complete(
        self,
        refund_id: str,
        *,
        status: str,
        gateway_refund_id: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        stmt = (
            update(RefundRequestTable)
            .where(RefundRequestTable.refund_id == refund_id, RefundRequestTable.status == "pending")
            .values(
                status=status,
                gateway_refund_id=gateway_refund_id,
                failure_reason=failure_reason,
                processed_at=datetime.now(UTC),
            )
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# LifecycleEventRepository
# ---------------------------------------------------------------------------


class LifecycleEventRepository:
    """Audit trail and idempotency ledger for confirmed transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find(self, group_id: str, action: str, idempotency_key: str) -> LifecycleEventTable | None:
        stmt = select(LifecycleEventTable).where(
            LifecycleEventTable.group_id == group_id,
            LifecycleEventTable.action == action,
            LifecycleEventTable.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(
        self,
        *,
        group_id: str,
        action: str,
        principal_id: str,
        result: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> LifecycleEventTable:
        row = LifecycleEventTable(
            event_id=new_id(),
            group_id=group_id,
            action=action,
            principal_id=principal_id,
            idempotency_key=idempotency_key,
            result=result,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_group(self, group_id: str) -> list[LifecycleEventTable]:
        stmt = (
            select(LifecycleEventTable)
            .where(LifecycleEventTable.group_id == group_id)
            .order_by(LifecycleEventTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# ReconciliationGapRepository
# ---------------------------------------------------------------------------


class ReconciliationGapRepository:
    """Queue of paid invoices whose fulfilment needs operator attention."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self, *, invoice_id: str, cycle_id: str, detail: str, kind: str = "order_generation_failed"
    ) -> str:
        existing = await self._session.execute(
            select(ReconciliationGapTable).where(
                ReconciliationGapTable.invoice_id == invoice_id,
                ReconciliationGapTable.kind == kind,
                ReconciliationGapTable.resolved.is_(False),
            )
        )
        row = existing.scalar_one_or_none()
        if row is not None:
            row.attempts += 1
            row.detail = detail
            await self._session.flush()
            return row.gap_id

        row = ReconciliationGapTable(
            gap_id=new_id(),
            invoice_id=invoice_id,
            cycle_id=cycle_id,
            kind=kind,
            detail=detail,
        )
        self._session.add(row)
        await self._session.flush()
        return row.gap_id

    async def get(self, gap_id: str) -> ReconciliationGapTable | None:
        return await self._session.get(ReconciliationGapTable, gap_id)

    async def list_unresolved(self, limit: int = 100) -> list[ReconciliationGapTable]:
        stmt = (
            select(ReconciliationGapTable)
            .where(ReconciliationGapTable.resolved.is_(False))
            .order_by(ReconciliationGapTable.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def resolve(self, gap_id: str, resolved_by: str) -> bool:
        stmt = (
            update(ReconciliationGapTable)
            .where(ReconciliationGapTable.gap_id == gap_id, ReconciliationGapTable.resolved.is_(False))
            .values(resolved=True, resolved_by=resolved_by, resolved_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def count_unresolved(self) -> int:
        stmt = (
            select(func.count())
            .select_from(ReconciliationGapTable)
            .where(ReconciliationGapTable.resolved.is_(False))
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())
