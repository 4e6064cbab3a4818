"""Tests for the SQLite adapter, session factories and the transaction helper."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from billing_engine.state.database import get_engine, get_session_factory, sync_database_url, transaction
from billing_engine.state.repository import CreditRepository, GroupRepository, InvoiceRepository, VendorRepository
from billing_engine.state.sqlite_adapter import (
    create_local_tables,
    local_database_url,
    sqlite_path_from_url,
)
from billing_engine.state.tables import OrderTable


class TestUrls:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("sqlite+aiosqlite:///data/billing.db", "data/billing.db"),
            ("sqlite+aiosqlite:////tmp/billing.db", "/tmp/billing.db"),
            ("sqlite+aiosqlite:///:memory:", ":memory:"),
            ("sqlite+aiosqlite://", ":memory:"),
        ],
    )
    def test_path_from_url(self, url: str, expected: str) -> None:
        assert sqlite_path_from_url(url) == expected

    def test_local_url(self, tmp_path) -> None:
        assert local_database_url(tmp_path / "x.db") == f"sqlite+aiosqlite:///{tmp_path / 'x.db'}"

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("postgresql+asyncpg://u:p@db/bb?ssl=require", "postgresql+psycopg://u:p@db/bb?sslmode=require"),
            ("postgresql://u:p@db/bb", "postgresql+psycopg://u:p@db/bb"),
            ("sqlite+aiosqlite:///billing.db", "sqlite:///billing.db"),
        ],
    )
    def test_sync_url_for_migrations(self, url: str, expected: str) -> None:
        assert sync_database_url(url) == expected


class TestLocalStore:
    @pytest.mark.asyncio
    async def test_get_engine_creates_file_and_tables(self, tmp_path) -> None:
        db_file = tmp_path / "nested" / "billing.db"
        engine = get_engine(local_database_url(db_file))
        try:
            tables = await create_local_tables(engine)
            again = await create_local_tables(engine)
        finally:
            await engine.dispose()

        assert db_file.exists()
        assert tables == again
        assert {"subscription_groups", "invoices", "credits", "slot_bookings"} <= set(tables)

    @pytest.mark.asyncio
    async def test_wal_and_foreign_keys_enabled(self, engine) -> None:
        async with engine.connect() as conn:
            journal = (await conn.execute(text("PRAGMA journal_mode"))).scalar_one()
            foreign_keys = (await conn.execute(text("PRAGMA foreign_keys"))).scalar_one()
        assert journal.lower() == "wal"
        assert foreign_keys == 1

    @pytest.mark.asyncio
    async def test_orphan_order_is_rejected(self, session_factory) -> None:
        with pytest.raises(IntegrityError):
            async with transaction(session_factory) as session:
                session.add(
                    OrderTable(
                        order_id="ord-1",
                        subscription_id="missing-sub",
                        group_id="missing-group",
                        cycle_id="missing-cycle",
                        consumer_id="consumer-1",
                        vendor_id="vendor-1",
                        service_date=date(2024, 6, 10),
                        slot="lunch",
                        unit_price=10_000,
                        status="scheduled",
                    )
                )


class TestTransaction:
    def test_factory_is_cached_per_engine(self, engine) -> None:
        assert get_session_factory(engine) is get_session_factory(engine)

    @pytest.mark.asyncio
    async def test_commits_on_success(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            await VendorRepository(session).upsert_slot("vendor-1", "lunch", unit_price=10_000)

        async with transaction(session_factory) as session:
            slots = await VendorRepository(session).list_slots("vendor-1")
        assert [s.slot for s in slots] == ["lunch"]

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, session_factory) -> None:
        with pytest.raises(RuntimeError):
            async with transaction(session_factory) as session:
                await VendorRepository(session).upsert_slot("vendor-1", "dinner", unit_price=12_000)
                raise RuntimeError("abort checkout")

        async with transaction(session_factory) as session:
            assert await VendorRepository(session).list_slots("vendor-1") == []


class TestRepositoryWrites:
    @pytest.mark.asyncio
    async def test_invoice_lines_land_after_their_invoice(self, checkout, session_factory) -> None:
        result = await checkout()

        async with transaction(session_factory) as session:
            invoices = InvoiceRepository(session)
            invoice = await invoices.get(result.invoice_id)
            lines = await invoices.get_lines(result.invoice_id)

        assert invoice is not None
        assert len(lines) == 1
        assert sum(line.amount for line in lines) == result.total_amount

    @pytest.mark.asyncio
    async def test_consume_credits_already_loaded_in_session(self, session_factory) -> None:
        now = datetime(2024, 6, 8, 4, 30, tzinfo=UTC)
        async with transaction(session_factory) as session:
            group = await GroupRepository(session).create(
                consumer_id="consumer-1", vendor_id="vendor-1", period="weekly", start_date=date(2024, 6, 10)
            )
            credit = await CreditRepository(session).insert(
                consumer_id="consumer-1",
                group_id=group.group_id,
                amount=10_000,
                reason="pause",
                expires_at=now + timedelta(days=30),
            )

        async with transaction(session_factory) as session:
            credits = CreditRepository(session)
            # Rows read back from SQLite carry naive timestamps.
            loaded = await credits.list_available(now=now, group_id=group.group_id)
            consumed = await credits.mark_consumed([credit.credit_id], consumed_by="inv-1", now=now)

        assert [c.credit_id for c in loaded] == [credit.credit_id]
        assert consumed == [credit.credit_id]
        async with transaction(session_factory) as session:
            assert await CreditRepository(session).balance(now=now, group_id=group.group_id) == 0
