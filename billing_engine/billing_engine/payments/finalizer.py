"""Invoice & payment finalizer.

Turns at-least-once, possibly out-of-order gateway webhooks into exactly
one status transition per invoice and exactly one order-generation pass
per paid invoice.

The decision logic is pure and testable without a datastore:

* :func:`verify_signature` -- HMAC-SHA256 check of the raw body.
* :func:`classify` -- gateway event -> :class:`Action`.
* :func:`next_invoice_status` -- monotone invoice state machine.

:meth:`InvoiceFinalizer.apply` then performs the side effects in separate
transactions:

1. Lock the invoice row and compare-and-set its status.  Only the caller
   whose update matches the expected prior status proceeds; duplicate or
   concurrent deliveries short-circuit as ``duplicate``.
2. For a ``paid`` transition, generate orders for the invoice's cycle.
3. If generation fails, the invoice stays ``paid`` and a reconciliation gap
   is recorded for operator follow-up.

A capture the invoice can no longer take (it was voided by a pause or
cancel, or is already paid under another payment id) is never dropped: the
payment is recorded, a pending refund is queued for its amount and an
``unapplied_payment`` gap is opened in the same transaction.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import PlatformConfig
from billing_engine.errors import InvalidSignatureError
from billing_engine.models.enums import InvoiceStatus
from billing_engine.models.payments import (
    Action,
    ActionKind,
    FinalizeOutcome,
    FinalizeResult,
    PaymentEvent,
    PaymentEventType,
)
from billing_engine.orders.generator import OrderGenerator
from billing_engine.state.database import transaction
from billing_engine.state.repository import InvoiceRepository, ReconciliationGapRepository, RefundRepository
from billing_engine.state.tables import InvoiceTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


GAP_ORDER_GENERATION = "order_generation_failed"
GAP_UNAPPLIED_PAYMENT = "unapplied_payment"


# ---------------------------------------------------------------------------
# Pure decision logic
# ---------------------------------------------------------------------------

# Allowed invoice transitions.  Nothing ever re-enters pending_payment, and
# paid can only become void (refund).
INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING_PAYMENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.FAILED, InvoiceStatus.VOID}),
    InvoiceStatus.FAILED: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.VOID}),
    InvoiceStatus.VOID: frozenset(),
}


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Return ``True`` if *signature* is the hex HMAC-SHA256 of *body* under *secret*."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def classify(event: PaymentEvent) -> Action:
    """Map a gateway event to the invoice action it implies."""
    if not event.invoice_id:
        return Action(kind=ActionKind.IGNORE, event=event, reason="no invoice reference in payment notes")

    kind: ActionKind
    reason: str | None = None
    if event.event_type == PaymentEventType.CAPTURED:
        kind = ActionKind.MARK_PAID
    elif event.event_type == PaymentEventType.AUTHORIZED:
        if event.captured:
            kind = ActionKind.MARK_PAID
        else:
            kind, reason = ActionKind.IGNORE, "authorized but not yet captured"
    elif event.event_type == PaymentEventType.FAILED:
        kind = ActionKind.MARK_FAILED
    elif event.event_type in (PaymentEventType.REFUNDED, PaymentEventType.REFUND_CREATED):
        kind = ActionKind.MARK_VOID
    else:
        kind, reason = ActionKind.IGNORE, f"unhandled event type {event.raw_event}"
    return Action(kind=kind, invoice_id=event.invoice_id, event=event, reason=reason)


def next_invoice_status(current: InvoiceStatus, target: InvoiceStatus) -> InvoiceStatus | None:
    """Return *target* if the transition is allowed, else ``None`` (no change)."""
    if target in INVOICE_TRANSITIONS[current]:
        return target
    return None


def _is_unapplied_capture(
    current: InvoiceStatus, target: InvoiceStatus, invoice: InvoiceTable, event: PaymentEvent
) -> bool:
    """A capture with a new payment id on an invoice that cannot become paid by it."""
    if target != InvoiceStatus.PAID or not event.payment_id:
        return False
    if current == InvoiceStatus.VOID:
        return True
    return current == InvoiceStatus.PAID and event.payment_id != invoice.gateway_payment_id


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------


async def void_unpaid_invoice(session: AsyncSession, invoice_id: str, reason: str) -> bool:
    """Void an invoice that was never paid (used when a group pauses or cancels)."""
    voided = await InvoiceRepository(session).transition(
        invoice_id,
        from_statuses=[InvoiceStatus.PENDING_PAYMENT.value, InvoiceStatus.FAILED.value],
        to_status=InvoiceStatus.VOID.value,
        failure_reason=reason,
        voided_at=_utcnow(),
    )
    if voided:
        logger.info("Voided unpaid invoice %s: %s", invoice_id, reason)
    return voided


class InvoiceFinalizer:
    """Applies classified gateway events to invoices.

    Parameters
    ----------
    session_factory:
        Factory for the independent transactions used by :meth:`apply`.
    config:
        Platform config passed to the order generator.
    webhook_secret:
        Shared secret for :meth:`handle`.  Required to accept raw webhooks.
    clock:
        Returns the current instant; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PlatformConfig,
        *,
        webhook_secret: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._webhook_secret = webhook_secret
        self._clock = clock or _utcnow

    async def handle(self, body: bytes, signature: str | None) -> FinalizeResult:
        """Verify, decode and process one raw webhook delivery.

        Raises
        ------
        InvalidSignatureError
            If *signature* does not match *body*.  No state is touched.
        """
        if not verify_signature(body, signature, self._webhook_secret):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignatureError("webhook signature verification failed")
        return await self.handle_body(body)

    async def handle_payload(self, payload: dict[str, Any]) -> FinalizeResult:
        """Parse, classify and apply a decoded webhook body."""
        try:
            event = PaymentEvent.from_payload(payload)
        except ValueError as exc:
            logger.warning("Ignoring malformed webhook payload: %s", exc)
            return FinalizeResult(outcome=FinalizeOutcome.IGNORED, detail=str(exc))
        return await self.apply(classify(event))

    async def handle_body(self, body: bytes) -> FinalizeResult:
        """Decode a verified raw webhook body and process it."""
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring undecodable webhook body: %s", exc)
            return FinalizeResult(outcome=FinalizeOutcome.IGNORED, detail="invalid JSON")
        if not isinstance(payload, dict):
            return FinalizeResult(outcome=FinalizeOutcome.IGNORED, detail="payload is not an object")
        return await self.handle_payload(payload)

    async def apply(self, action: Action) -> FinalizeResult:
        """Apply *action* atomically and, for payments, generate orders once."""
        if action.kind == ActionKind.IGNORE or action.invoice_id is None:
            logger.info("Webhook %s ignored: %s", action.event.raw_event, action.reason)
            return FinalizeResult(outcome=FinalizeOutcome.IGNORED, invoice_id=action.invoice_id, detail=action.reason)

        target = action.target_status
        assert target is not None  # noqa: S101

        transitioned, result, cycle_id = await self._transition(action, target)
        if not transitioned:
            return result
        if target != InvoiceStatus.PAID:
            return result
        return await self._fulfil(action.invoice_id, cycle_id)

    async def _transition(self, action: Action, target: InvoiceStatus) -> tuple[bool, FinalizeResult, str]:
        invoice_id = action.invoice_id or ""
        event = action.event
        async with transaction(self._session_factory) as session:
            invoices = InvoiceRepository(session)
            invoice = await invoices.get(invoice_id, for_update=True)
            if invoice is None:
                logger.warning("Webhook %s references unknown invoice %s", event.raw_event, invoice_id)
                return False, FinalizeResult(outcome=FinalizeOutcome.NOT_FOUND, invoice_id=invoice_id), ""

            current = InvoiceStatus(invoice.status)
            if _is_unapplied_capture(current, target, invoice, event):
                result = await self._hold_unapplied_payment(session, invoice, event)
                return False, result, invoice.cycle_id
            if next_invoice_status(current, target) is None:
                outcome = FinalizeOutcome.DUPLICATE if current == target else FinalizeOutcome.IGNORED
                logger.info(
                    "Invoice %s already %s; %s event %s",
                    invoice_id,
                    current.value,
                    outcome.value,
                    event.raw_event,
                )
                return False, FinalizeResult(outcome=outcome, invoice_id=invoice_id, status=current), invoice.cycle_id

            now = self._clock().astimezone(UTC)
            fields: dict[str, Any] = {}
            if target == InvoiceStatus.PAID:
                fields = {
                    "paid_at": now,
                    "gateway_payment_id": event.payment_id,
                    "gateway_order_id": event.order_id or invoice.gateway_order_id,
                    "failure_reason": None,
                }
            elif target == InvoiceStatus.FAILED:
                fields = {"failure_reason": event.error_description or event.error_reason or "payment failed"}
            elif target == InvoiceStatus.VOID:
                fields = {
                    "voided_at": now,
                    "refunded_amount": event.refund_amount or event.amount,
                    "refund_ref": event.refund_id,
                }

            # Re-checked under the row lock: only one delivery can match.
            won = await invoices.transition(invoice_id, from_statuses=[current.value], to_status=target.value, **fields)
            if not won:
                logger.info("Invoice %s finalized concurrently; treating %s as duplicate", invoice_id, event.raw_event)
                return False, FinalizeResult(outcome=FinalizeOutcome.DUPLICATE, invoice_id=invoice_id), invoice.cycle_id

            if event.payment_id:
                await invoices.record_payment(
                    gateway_payment_id=event.payment_id,
                    invoice_id=invoice_id,
                    gateway_order_id=event.order_id,
                    event_type=event.raw_event,
                    amount=event.amount,
                    status=target.value,
                    raw=event.model_dump(mode="json"),
                )
            cycle_id = invoice.cycle_id

        logger.info("Invoice %s %s -> %s (%s)", invoice_id, current.value, target.value, event.raw_event)
        return True, FinalizeResult(outcome=FinalizeOutcome.PROCESSED, invoice_id=invoice_id, status=target), cycle_id

    async def _hold_unapplied_payment(
        self, session: AsyncSession, invoice: InvoiceTable, event: PaymentEvent
    ) -> FinalizeResult:
        status = InvoiceStatus(invoice.status)
        invoice_id = invoice.invoice_id
        payment_id = event.payment_id or ""
        recorded = await InvoiceRepository(session).record_payment(
            gateway_payment_id=payment_id,
            invoice_id=invoice_id,
            gateway_order_id=event.order_id,
            event_type=event.raw_event,
            amount=event.amount,
            status=GAP_UNAPPLIED_PAYMENT,
            raw=event.model_dump(mode="json"),
        )
        if not recorded:
            logger.info("Unapplied payment %s for invoice %s already held", payment_id, invoice_id)
            return FinalizeResult(outcome=FinalizeOutcome.DUPLICATE, invoice_id=invoice_id, status=status)

        refund_id: str | None = None
        if event.amount and event.amount > 0:
            refund = await RefundRepository(session).create(
                group_id=invoice.group_id,
                consumer_id=invoice.consumer_id,
                amount=event.amount,
                gateway_payment_id=payment_id,
            )
            refund_id = refund.refund_id
        detail = f"payment {payment_id} captured on {status.value} invoice; refund {refund_id or 'not queued'}"
        gap_id = await ReconciliationGapRepository(session).record(
            invoice_id=invoice_id, cycle_id=invoice.cycle_id, detail=detail, kind=GAP_UNAPPLIED_PAYMENT
        )
        logger.error(
            "Payment %s captured on %s invoice %s; refund %s queued, gap %s",
            payment_id,
            status.value,
            invoice_id,
            refund_id,
            gap_id,
            extra={"invoice_id": invoice_id, "gap_id": gap_id, "refund_id": refund_id},
        )
        return FinalizeResult(
            outcome=FinalizeOutcome.RECONCILIATION_GAP,
            invoice_id=invoice_id,
            status=status,
            gap_id=gap_id,
            detail=detail,
        )

    async def _fulfil(self, invoice_id: str, cycle_id: str) -> FinalizeResult:
        try:
            async with transaction(self._session_factory) as session:
                report = await OrderGenerator(session, self._config).generate_for_cycle(cycle_id)
        except Exception as exc:
            # Payment truth stands; the fulfilment failure is queued, not re-raised.
            detail = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "Order generation failed for paid invoice %s (cycle %s)",
                invoice_id,
                cycle_id,
                extra={"invoice_id": invoice_id, "cycle_id": cycle_id},
            )
            async with transaction(self._session_factory) as session:
                gap_id = await ReconciliationGapRepository(session).record(
                    invoice_id=invoice_id, cycle_id=cycle_id, detail=detail, kind=GAP_ORDER_GENERATION
                )
            logger.error(
                "Reconciliation gap %s recorded for invoice %s",
                gap_id,
                invoice_id,
                extra={"invoice_id": invoice_id, "gap_id": gap_id},
            )
            return FinalizeResult(
                outcome=FinalizeOutcome.RECONCILIATION_GAP,
                invoice_id=invoice_id,
                status=InvoiceStatus.PAID,
                gap_id=gap_id,
                detail=detail,
            )

        return FinalizeResult(
            outcome=FinalizeOutcome.PROCESSED,
            invoice_id=invoice_id,
            status=InvoiceStatus.PAID,
            orders_created=report.created,
        )
