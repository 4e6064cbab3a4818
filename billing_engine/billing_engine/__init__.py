"""Subscription billing and fulfillment engine."""

__version__ = "0.4.0"
