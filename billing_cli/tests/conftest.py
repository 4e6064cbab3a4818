"""Shared fixtures for CLI tests.

Commands run through Typer's ``CliRunner`` against an on-disk SQLite
database passed with ``--database-url``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from typer.testing import CliRunner

from billing_engine.config import PlatformConfig
from billing_engine.lifecycle.checkout import CheckoutService
from billing_engine.models.billing import CheckoutRequest, SubscriptionLineRequest
from billing_engine.models.enums import BillingPeriod, Slot, Weekday
from billing_engine.payments.finalizer import InvoiceFinalizer
from billing_engine.state.database import get_session_factory, transaction
from billing_engine.state.repository import VendorRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine

# Saturday 2024-06-08, 10:00 in Asia/Kolkata.
SEED_NOW = datetime(2024, 6, 8, 4, 30, tzinfo=UTC)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


@pytest.fixture()
def db_args(db_path: Path) -> list[str]:
    """Global options pointing the CLI at the test database."""
    return ["--database-url", f"sqlite+aiosqlite:///{db_path}"]


@pytest.fixture(autouse=True)
def _no_gateway_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("API_RAZORPAY_KEY_ID", raising=False)
    monkeypatch.delenv("API_RAZORPAY_KEY_SECRET", raising=False)
    monkeypatch.delenv("BILLING_DATABASE_URL", raising=False)


async def _seed_paid_weekly_group(db_path: Path) -> str:
    engine = get_local_engine(db_path)
    try:
        await create_local_tables(engine)
        factory = get_session_factory(engine)
        config = PlatformConfig()
        async with transaction(factory) as session:
            await VendorRepository(session).upsert_slot("vendor-1", Slot.LUNCH.value, unit_price=10_000)
        async with transaction(factory) as session:
            result = await CheckoutService(session, config, clock=lambda: SEED_NOW).create_subscription_checkout(
                CheckoutRequest(
                    consumer_id="consumer-1",
                    vendor_id="vendor-1",
                    period=BillingPeriod.WEEKLY,
                    start_date=date(2024, 6, 10),
                    lines=[SubscriptionLineRequest(slot=Slot.LUNCH, weekdays=[Weekday.MON, Weekday.WED])],
                )
            )
        finalizer = InvoiceFinalizer(factory, config, clock=lambda: SEED_NOW)
        await finalizer.handle_payload(
            {
                "event": "payment.captured",
                "payload": {
                    "payment": {
                        "entity": {
                            "id": "pay_cli_1",
                            "amount": result.total_amount,
                            "captured": True,
                            "notes": {"invoice_id": result.invoice_id},
                        }
                    }
                },
            }
        )
        return result.group_id
    finally:
        await engine.dispose()


@pytest.fixture()
def seeded_group(db_path: Path) -> str:
    """Seed one paid weekly lunch group (Mon/Wed from 2024-06-10); return its id."""
    return asyncio.run(_seed_paid_weekly_group(db_path))
