"""API router modules for the billing service."""

from __future__ import annotations

from billing_api.routers import health, jobs, reconciliation, subscriptions, vendors, webhooks

__all__ = [
    "health",
    "jobs",
    "reconciliation",
    "subscriptions",
    "vendors",
    "webhooks",
]
