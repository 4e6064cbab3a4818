"""Outbound collection of an unpaid invoice through the gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.state.database import transaction
from billing_engine.state.repository import InvoiceRepository

logger = logging.getLogger(__name__)


@dataclass
class PaymentRequest:
    group_id: str
    invoice_id: str
    amount: int
    currency: str
    receipt: str
    customer_id: str | None = None
    token: str | None = None

    @property
    def has_mandate(self) -> bool:
        return bool(self.customer_id and self.token)


async def request_payment(
    gateway: PaymentGatewayClient,
    session_factory: async_sessionmaker[AsyncSession],
    request: PaymentRequest,
) -> str:
    """Raise a gateway order for the invoice and charge the mandate if there is one.

    The order id is stored on the invoice in its own transaction before the
    mandate is charged, so a capture for it can always be matched.  Returns
    the gateway order id.

    Raises
    ------
    ExternalDependencyError
        When the gateway rejects or keeps failing either call.
    """
    notes = {"invoice_id": request.invoice_id, "group_id": request.group_id}
    order = await gateway.create_order(
        amount=request.amount, currency=request.currency, receipt=request.receipt, notes=notes
    )
    async with transaction(session_factory) as session:
        await InvoiceRepository(session).set_gateway_order(request.invoice_id, order["id"])
    if request.has_mandate:
        await gateway.create_recurring_payment(
            customer_id=request.customer_id,
            token=request.token,
            order_id=order["id"],
            amount=request.amount,
            currency=request.currency,
            receipt=request.receipt,
            notes=notes,
        )
        logger.info("Charged mandate for invoice %s", request.invoice_id, extra={"invoice_id": request.invoice_id})
    return order["id"]
