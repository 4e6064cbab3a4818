"""Tests for the in-process renewal scheduler."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from billing_api.services.renewal_scheduler import RenewalScheduler, due_periods
from billing_engine.config import PlatformConfig
from billing_engine.models.enums import BillingPeriod, Weekday


class TestDuePeriods:
    def test_weekly_day(self) -> None:
        assert due_periods(date(2024, 6, 14), PlatformConfig()) == [BillingPeriod.WEEKLY]

    def test_monthly_day(self) -> None:
        assert due_periods(date(2024, 6, 25), PlatformConfig()) == [BillingPeriod.MONTHLY]

    def test_both_on_same_day(self) -> None:
        config = PlatformConfig(weekly_renewal_day=Weekday.TUE)
        assert due_periods(date(2024, 6, 25), config) == [BillingPeriod.WEEKLY, BillingPeriod.MONTHLY]

    def test_nothing_due(self) -> None:
        assert due_periods(date(2024, 6, 12), PlatformConfig()) == []


class TestRenewalScheduler:
    @pytest.mark.asyncio
    async def test_fires_each_job_once_per_day(self, session_factory, engine_settings) -> None:
        # Friday 2024-06-14, 10:00 in Asia/Kolkata.
        scheduler = RenewalScheduler(
            session_factory, engine_settings, clock=lambda: datetime(2024, 6, 14, 4, 30, tzinfo=UTC)
        )

        first = await scheduler.run_due()
        second = await scheduler.run_due()

        assert first == ["housekeeping", "weekly", "payment_retry"]
        assert second == []

    @pytest.mark.asyncio
    async def test_uses_local_business_date(self, session_factory, engine_settings) -> None:
        # 20:00 UTC on the 24th is already the 25th in Asia/Kolkata.
        scheduler = RenewalScheduler(
            session_factory, engine_settings, clock=lambda: datetime(2024, 6, 24, 20, 0, tzinfo=UTC)
        )
        assert await scheduler.run_due() == ["housekeeping", "monthly", "payment_retry"]

    @pytest.mark.asyncio
    async def test_payment_retries_fire_hourly(self, session_factory, engine_settings) -> None:
        # Wednesday 2024-06-12: no renewal day.
        now = [datetime(2024, 6, 12, 4, 30, tzinfo=UTC)]
        scheduler = RenewalScheduler(session_factory, engine_settings, clock=lambda: now[0])

        assert await scheduler.run_due() == ["housekeeping", "payment_retry"]
        now[0] = datetime(2024, 6, 12, 4, 55, tzinfo=UTC)
        assert await scheduler.run_due() == []
        now[0] = datetime(2024, 6, 12, 5, 1, tzinfo=UTC)
        assert await scheduler.run_due() == ["payment_retry"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, engine_settings) -> None:
        scheduler = RenewalScheduler(
            session_factory,
            engine_settings,
            poll_seconds=3600,
            clock=lambda: datetime(2024, 6, 12, 4, 30, tzinfo=UTC),
        )
        await scheduler.start()
        assert scheduler.running is True
        await scheduler.stop()
        assert scheduler.running is False
