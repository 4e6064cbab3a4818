"""Renewal batch runner."""

from billing_engine.renewal.runner import RenewalRunner, renewal_window

__all__ = ["RenewalRunner", "renewal_window"]
