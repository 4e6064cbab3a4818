"""Typed failures raised by the billing engine.

Callers distinguish six outcomes:

* :class:`ValidationError` -- bad input, insufficient notice or an invalid
  state transition.  Nothing was mutated.
* :class:`NotFoundError` -- the target group, invoice, order or subscription
  does not exist.  Nothing was mutated.
* :class:`ConflictError` -- an idempotency short-circuit (e.g. invoice
  already paid).  Treated as success by every entry point.
* :class:`ExternalDependencyError` -- the payment gateway could not be
  reached or rejected the call after retries.
* :class:`ReconciliationGap` -- payment succeeded but fulfilment failed.
  Queued for operator follow-up and never re-raised to the gateway.
* :class:`InvalidSignatureError` -- a webhook failed signature verification.
"""

from __future__ import annotations

from typing import Any


class BillingEngineError(Exception):
    """Base class for all engine errors."""

    code: str = "billing_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


class ValidationError(BillingEngineError):
    code = "validation_error"


class NotFoundError(BillingEngineError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(BillingEngineError):
    """Raised when an operation has already been applied.

    Carries the previously recorded result (if any) so the caller can
    return it unchanged.
    """

    code = "already_applied"

    def __init__(self, message: str, *, previous: dict[str, Any] | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.previous = previous


class ExternalDependencyError(BillingEngineError):
    code = "external_dependency_error"

    def __init__(self, message: str, *, service: str, attempts: int = 1, status_code: int | None = None) -> None:
        super().__init__(message, service=service, attempts=attempts)
        self.service = service
        self.attempts = attempts
        self.status_code = status_code


class ReconciliationGap(BillingEngineError):
    """Payment truth and fulfilment truth have diverged."""

    code = "reconciliation_gap"

    def __init__(self, message: str, *, invoice_id: str, gap_id: str | None = None, **context: Any) -> None:
        super().__init__(message, invoice_id=invoice_id, **context)
        self.invoice_id = invoice_id
        self.gap_id = gap_id


class InvalidSignatureError(BillingEngineError):
    """Webhook body did not match its signature; nothing was parsed."""

    code = "invalid_signature"
