"""Shared fixtures for billing API tests.

The app is exercised through ``httpx.ASGITransport`` against a real
on-disk SQLite database, with the settings, session and gateway
dependencies overridden.  The lifespan does not run, so no global engine
or scheduler is created.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.dependencies import (
    get_db_session,
    get_engine_settings,
    get_gateway,
    get_session_factory,
    get_settings,
)
from billing_api.main import create_app
from billing_engine.config import EngineSettings
from billing_engine.cycles.calculator import local_today
from billing_engine.state.database import get_session_factory as engine_session_factory
from billing_engine.state.database import transaction
from billing_engine.state.repository import VendorRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine

WEBHOOK_SECRET = "whsec_api_test"
CRON_SECRET = "cron-test-secret"
VENDOR_ID = "vendor-1"
PRINCIPAL_HEADERS = {"X-Principal-Id": "consumer-1"}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        razorpay_webhook_secret=SecretStr(WEBHOOK_SECRET),
        cron_secret=SecretStr(CRON_SECRET),
    )


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings(_env_file=None, renewal_concurrency=1)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "api.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return engine_session_factory(db_engine)


@pytest_asyncio.fixture()
async def vendor(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """Seed a vendor offering lunch at 100.00 with capacity 10."""
    async with transaction(session_factory) as session:
        await VendorRepository(session).upsert_slot(VENDOR_ID, "lunch", unit_price=10_000, max_meals_per_day=10)
    return VENDOR_ID


# ---------------------------------------------------------------------------
# Dates relative to the real clock
# ---------------------------------------------------------------------------


@pytest.fixture()
def next_monday() -> date:
    """A Monday at least two local days away, so notice windows are met."""
    today = local_today(datetime.now(UTC), ZoneInfo("Asia/Kolkata"))
    days = (7 - today.weekday()) % 7
    if days < 2:
        days += 7
    return today + timedelta(days=days)


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    engine_settings: EngineSettings,
    session_factory: async_sessionmaker[AsyncSession],
):
    """Create a FastAPI app wired to the test database."""
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with transaction(session_factory) as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    application.dependency_overrides[get_gateway] = lambda: None
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=PRINCIPAL_HEADERS) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def checkout(client: AsyncClient, vendor: str, next_monday: date):
    """Return a coroutine that checks out a Mon/Wed/Fri lunch plan."""

    async def _checkout(consumer_id: str = "consumer-1", **overrides: Any) -> dict[str, Any]:
        body = {
            "consumer_id": consumer_id,
            "vendor_id": vendor,
            "period": "weekly",
            "start_date": next_monday.isoformat(),
            "lines": [{"slot": "lunch", "weekdays": ["mon", "wed", "fri"], "skip_allowance": 2}],
        }
        body.update(overrides)
        response = await client.post("/api/v1/subscriptions/checkout", json=body)
        assert response.status_code == 201, response.text
        return response.json()

    return _checkout


@pytest.fixture()
def deliver_webhook(client: AsyncClient):
    """Return a coroutine that posts a signed gateway event."""

    async def _deliver(payload: dict[str, Any], *, secret: str = WEBHOOK_SECRET):
        body = json.dumps(payload).encode()
        return await client.post(
            "/api/v1/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": sign(body, secret), "Content-Type": "application/json"},
        )

    return _deliver


@pytest.fixture()
def captured():
    def _captured(invoice_id: str, amount: int, payment_id: str = "pay_api_1") -> dict[str, Any]:
        return {
            "event": "payment.captured",
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": "order_api_1",
                        "amount": amount,
                        "currency": "INR",
                        "captured": True,
                        "notes": {"invoice_id": invoice_id},
                    }
                }
            },
        }

    return _captured
