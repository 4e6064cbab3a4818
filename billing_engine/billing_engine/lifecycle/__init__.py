"""Subscription lifecycle: checkout, pause, resume, cancel and auto-cancel."""

from billing_engine.lifecycle.auto_cancel import AutoCancelJob
from billing_engine.lifecycle.checkout import CheckoutService
from billing_engine.lifecycle.invoicing import BilledCycle, CycleBiller
from billing_engine.lifecycle.state_machine import (
    SubscriptionLifecycle,
    classify_resume,
    refund_options,
    resolve_refund_preference,
)

__all__ = [
    "AutoCancelJob",
    "BilledCycle",
    "CheckoutService",
    "CycleBiller",
    "SubscriptionLifecycle",
    "classify_resume",
    "refund_options",
    "resolve_refund_preference",
]
