"""Subscription checkout: create a group, its first cycle and its first invoice."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import cycle_for, format_weekdays, local_today
from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.lifecycle.invoicing import CycleBiller
from billing_engine.models.billing import CheckoutRequest, CheckoutResult, PaymentOrder
from billing_engine.models.enums import CycleKind, GroupStatus, InvoiceStatus
from billing_engine.orders.generator import OrderGenerator
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.state.repository import GroupRepository, InvoiceRepository, VendorRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CheckoutService:
    def __init__(
        self,
        session: AsyncSession,
        config: PlatformConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._clock = clock or _utcnow
        self._groups = GroupRepository(session)
        self._invoices = InvoiceRepository(session)
        self._vendors = VendorRepository(session)
        self._biller = CycleBiller(session, config, clock=self._clock)

    async def create_subscription_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a subscription group and invoice its first (possibly partial) cycle.

        The first cycle is the aligned cycle containing ``start_date``, billed
        from ``start_date``.  Unit prices are taken from the vendor's slot
        configuration at checkout time.  If available store credit covers the
        whole amount the invoice is recorded ``paid`` and orders are
        generated immediately.

        Raises
        ------
        ValidationError
            If the start date is not in the future, a slot is not offered
            by the vendor, or no meal falls inside the first cycle.
        """
        today = local_today(self._clock(), self._config.tz)
        if request.start_date <= today:
            raise ValidationError("start_date must be after today", start_date=request.start_date.isoformat())

        prices: dict[str, int] = {}
        for line in request.lines:
            slot = await self._vendors.get_slot(request.vendor_id, line.slot.value)
            if slot is None or not slot.enabled:
                raise ValidationError(
                    f"vendor does not offer {line.slot.value}",
                    vendor_id=request.vendor_id,
                    slot=line.slot.value,
                )
            prices[line.slot.value] = slot.unit_price

        group = await self._groups.create(
            consumer_id=request.consumer_id,
            vendor_id=request.vendor_id,
            status=GroupStatus.ACTIVE.value,
            period=request.period.value,
            payment_method=request.payment_method.value,
            start_date=request.start_date,
        )
        for line in request.lines:
            await self._groups.add_subscription(
                group.group_id,
                slot=line.slot.value,
                weekdays=format_weekdays(line.weekdays),
                unit_price=prices[line.slot.value],
                skip_allowance=line.skip_allowance,
                skips_used=0,
                status=GroupStatus.ACTIVE.value,
            )

        window = cycle_for(request.start_date, request.period)
        billed = await self._biller.open_cycle(
            group, window=window, billable_from=request.start_date, kind=CycleKind.CHECKOUT
        )
        if billed is None or billed.invoice is None:
            raise ValidationError("could not open the first billing cycle", group_id=group.group_id)
        if billed.gross_amount == 0:
            raise ValidationError(
                "no deliverable meals in the first cycle",
                start_date=request.start_date.isoformat(),
            )

        if billed.invoice.status == InvoiceStatus.PAID.value:
            await OrderGenerator(self._session, self._config).generate_for_cycle(billed.cycle.cycle_id)

        logger.info(
            "Checkout for consumer %s with vendor %s: group %s invoice %s total=%d",
            request.consumer_id,
            request.vendor_id,
            group.group_id,
            billed.invoice.invoice_id,
            billed.total_amount,
        )
        return CheckoutResult(
            invoice_id=billed.invoice.invoice_id,
            group_id=group.group_id,
            cycle_id=billed.cycle.cycle_id,
            total_amount=billed.total_amount,
            currency=billed.invoice.currency,
            receipt=billed.invoice.receipt,
            renewal_date=window.renewal_date,
            cycle_start=window.start,
            cycle_end=window.end,
            lines=billed.lines,
        )

    async def attach_payment_order(self, invoice_id: str, gateway: PaymentGatewayClient) -> PaymentOrder:
        """Create (once) the gateway payment order for a pending invoice."""
        invoice = await self._invoices.get(invoice_id, for_update=True)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)
        if invoice.status != InvoiceStatus.PENDING_PAYMENT.value:
            raise ValidationError(f"invoice is {invoice.status}, not payable", invoice_id=invoice_id)
        if invoice.gateway_order_id:
            return PaymentOrder(
                invoice_id=invoice_id,
                gateway_order_id=invoice.gateway_order_id,
                amount=invoice.total_amount,
                currency=invoice.currency,
            )

        order = await gateway.create_order(
            amount=invoice.total_amount,
            currency=invoice.currency,
            receipt=invoice.receipt,
            notes={"invoice_id": invoice_id, "group_id": invoice.group_id},
        )
        await self._invoices.set_gateway_order(invoice_id, order["id"])
        return PaymentOrder(
            invoice_id=invoice_id,
            gateway_order_id=order["id"],
            amount=invoice.total_amount,
            currency=invoice.currency,
        )

    async def register_autopay(
        self,
        group_id: str,
        gateway: PaymentGatewayClient,
        *,
        name: str,
        contact: str | None = None,
        email: str | None = None,
    ) -> str:
        """Ensure the group has a gateway customer for mandate payments; returns its id."""
        group = await self._groups.get(group_id, for_update=True)
        if group is None:
            raise NotFoundError("subscription group", group_id)
        if group.gateway_customer_id:
            return group.gateway_customer_id
        customer = await gateway.create_customer(
            name=name, contact=contact, email=email, notes={"group_id": group_id}
        )
        group.gateway_customer_id = customer["id"]
        await self._session.flush()
        return group.gateway_customer_id

    async def record_mandate(self, group_id: str, mandate_ref: str) -> None:
        """Store the mandate token confirmed by the gateway for autopay renewals."""
        group = await self._groups.get(group_id, for_update=True)
        if group is None:
            raise NotFoundError("subscription group", group_id)
        if group.status == GroupStatus.CANCELLED.value:
            raise ValidationError("cannot attach a mandate to a cancelled subscription", group_id=group_id)
        group.mandate_ref = mandate_ref
        await self._session.flush()
        logger.info("Recorded autopay mandate for group %s", group_id)
