"""Shared fixtures for billing engine tests.

Every test gets its own on-disk SQLite database, a frozen clock and a few
factories for the rows most scenarios need: vendor slots, checkouts and
captured payments.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_engine.config import PlatformConfig
from billing_engine.lifecycle.checkout import CheckoutService
from billing_engine.models.billing import CheckoutRequest, CheckoutResult, SubscriptionLineRequest
from billing_engine.models.enums import BillingPeriod, PaymentMethod, Slot, Weekday
from billing_engine.models.payments import FinalizeResult
from billing_engine.payments.finalizer import InvoiceFinalizer
from billing_engine.state.database import get_session_factory, transaction
from billing_engine.state.repository import VendorRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine

VENDOR_ID = "vendor-1"
LUNCH_PRICE = 10_000
DINNER_PRICE = 12_000

# Saturday 2024-06-08, 10:00 in Asia/Kolkata.
FROZEN_NOW = datetime(2024, 6, 8, 4, 30, tzinfo=UTC)

MON_WED_FRI = [Weekday.MON, Weekday.WED, Weekday.FRI]
WEEKDAYS = [Weekday.MON, Weekday.TUE, Weekday.WED, Weekday.THU, Weekday.FRI]


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


def captured_payload(invoice_id: str, amount: int, *, payment_id: str = "pay_test_1") -> dict[str, Any]:
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": "order_test_1",
                    "amount": amount,
                    "currency": "INR",
                    "captured": True,
                    "notes": {"invoice_id": invoice_id},
                }
            }
        },
    }


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = get_local_engine(tmp_path / "billing.db")
    await create_local_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """A plain session; tests commit explicitly when a second session must see the rows."""
    async with session_factory() as db_session:
        yield db_session


# ---------------------------------------------------------------------------
# Config and clock
# ---------------------------------------------------------------------------


@pytest.fixture()
def config() -> PlatformConfig:
    return PlatformConfig()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(FROZEN_NOW)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def vendor(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """Seed a vendor offering lunch (capacity 10) and dinner (unlimited)."""
    async with transaction(session_factory) as db_session:
        vendors = VendorRepository(db_session)
        await vendors.upsert_slot(VENDOR_ID, Slot.LUNCH.value, unit_price=LUNCH_PRICE, max_meals_per_day=10)
        await vendors.upsert_slot(VENDOR_ID, Slot.DINNER.value, unit_price=DINNER_PRICE, max_meals_per_day=0)
    return VENDOR_ID


@pytest.fixture()
def checkout(
    session_factory: async_sessionmaker[AsyncSession],
    config: PlatformConfig,
    clock: FrozenClock,
    vendor: str,
) -> Callable[..., Awaitable[CheckoutResult]]:
    """Return a coroutine factory that commits one checkout."""

    async def _checkout(
        consumer_id: str = "consumer-1",
        *,
        start_date: date = date(2024, 6, 10),
        weekdays: list[Weekday] | None = None,
        slot: Slot = Slot.LUNCH,
        period: BillingPeriod = BillingPeriod.WEEKLY,
        payment_method: PaymentMethod = PaymentMethod.MANUAL,
        skip_allowance: int = 2,
    ) -> CheckoutResult:
        request = CheckoutRequest(
            consumer_id=consumer_id,
            vendor_id=vendor,
            period=period,
            start_date=start_date,
            payment_method=payment_method,
            lines=[
                SubscriptionLineRequest(
                    slot=slot,
                    weekdays=weekdays or MON_WED_FRI,
                    skip_allowance=skip_allowance,
                )
            ],
        )
        async with transaction(session_factory) as db_session:
            return await CheckoutService(db_session, config, clock=clock).create_subscription_checkout(request)

    return _checkout


@pytest.fixture()
def finalizer(
    session_factory: async_sessionmaker[AsyncSession],
    config: PlatformConfig,
    clock: FrozenClock,
) -> InvoiceFinalizer:
    return InvoiceFinalizer(session_factory, config, webhook_secret="whsec_test", clock=clock)


@pytest.fixture()
def payment_payload() -> Callable[..., dict[str, Any]]:
    return captured_payload


@pytest.fixture()
def pay(finalizer: InvoiceFinalizer) -> Callable[..., Awaitable[FinalizeResult]]:
    """Return a coroutine that delivers a ``payment.captured`` event for an invoice."""

    async def _pay(invoice_id: str, amount: int, *, payment_id: str = "pay_test_1") -> FinalizeResult:
        return await finalizer.handle_payload(captured_payload(invoice_id, amount, payment_id=payment_id))

    return _pay
