"""Payment gateway client, webhook finalization, refunds and reconciliation."""

from billing_engine.payments.finalizer import (
    INVOICE_TRANSITIONS,
    InvoiceFinalizer,
    classify,
    next_invoice_status,
    verify_signature,
    void_unpaid_invoice,
)
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.payments.reconciliation import GapRecord, ReconciliationService
from billing_engine.payments.refunds import RefundProcessor, RefundRunReport
from billing_engine.payments.retry import RetryConfig, async_retry_with_backoff

__all__ = [
    "GapRecord",
    "INVOICE_TRANSITIONS",
    "InvoiceFinalizer",
    "PaymentGatewayClient",
    "ReconciliationService",
    "RefundProcessor",
    "RefundRunReport",
    "RetryConfig",
    "async_retry_with_backoff",
    "classify",
    "next_invoice_status",
    "verify_signature",
    "void_unpaid_invoice",
]
