"""Payment gateway webhook events and finalizer decisions.

The gateway posts events shaped like::

    {
      "event": "payment.captured",
      "payload": {
        "payment": {"entity": {"id": "pay_..", "order_id": "order_..",
                               "amount": 50000, "currency": "INR",
                               "captured": true,
                               "notes": {"invoice_id": "..."},
                               "error_reason": null}},
        "refund": {"entity": {"id": "rfnd_..", "amount": 50000, ...}}
      }
    }

:class:`PaymentEvent` flattens that into the fields the finalizer uses.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from billing_engine.models.enums import InvoiceStatus


class PaymentEventType(str, Enum):
    AUTHORIZED = "payment.authorized"
    CAPTURED = "payment.captured"
    FAILED = "payment.failed"
    REFUNDED = "payment.refunded"
    REFUND_CREATED = "refund.created"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: str) -> PaymentEventType:
        try:
            return cls(raw)
        except ValueError:
            return cls.OTHER


class PaymentEvent(BaseModel):
    """Gateway event flattened to the fields relevant for finalization."""

    event_type: PaymentEventType
    raw_event: str = Field(..., description="Event name exactly as sent by the gateway.")
    payment_id: str | None = None
    order_id: str | None = None
    invoice_id: str | None = None
    amount: int | None = Field(default=None, description="Amount in minor units.")
    currency: str | None = None
    captured: bool = False
    error_reason: str | None = None
    error_description: str | None = None
    refund_id: str | None = None
    refund_amount: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PaymentEvent:
        """Parse a decoded webhook body.

        Raises
        ------
        ValueError
            If the body has no ``event`` name.
        """
        raw_event = payload.get("event")
        if not isinstance(raw_event, str) or not raw_event:
            raise ValueError("webhook payload has no event name")

        body = payload.get("payload") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        refund = (body.get("refund") or {}).get("entity") or {}
        notes = payment.get("notes") or refund.get("notes") or {}
        if not isinstance(notes, dict):
            # The gateway sends an empty list when no notes were attached.
            notes = {}

        return cls(
            event_type=PaymentEventType.parse(raw_event),
            raw_event=raw_event,
            payment_id=payment.get("id") or refund.get("payment_id"),
            order_id=payment.get("order_id"),
            invoice_id=notes.get("invoice_id"),
            amount=payment.get("amount"),
            currency=payment.get("currency"),
            captured=bool(payment.get("captured", False)),
            error_reason=payment.get("error_reason"),
            error_description=payment.get("error_description"),
            refund_id=refund.get("id"),
            refund_amount=refund.get("amount"),
        )


class ActionKind(str, Enum):
    MARK_PAID = "mark_paid"
    MARK_FAILED = "mark_failed"
    MARK_VOID = "mark_void"
    IGNORE = "ignore"


class Action(BaseModel):
    """Decision produced by the pure classifier."""

    kind: ActionKind
    invoice_id: str | None = None
    event: PaymentEvent
    reason: str | None = None

    @property
    def target_status(self) -> InvoiceStatus | None:
        return _TARGETS.get(self.kind)


_TARGETS = {
    ActionKind.MARK_PAID: InvoiceStatus.PAID,
    ActionKind.MARK_FAILED: InvoiceStatus.FAILED,
    ActionKind.MARK_VOID: InvoiceStatus.VOID,
}


class FinalizeOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    RECONCILIATION_GAP = "reconciliation_gap"


class FinalizeResult(BaseModel):
    outcome: FinalizeOutcome
    invoice_id: str | None = None
    status: InvoiceStatus | None = None
    orders_created: int = 0
    gap_id: str | None = None
    detail: str | None = None
