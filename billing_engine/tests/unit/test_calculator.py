"""Unit tests for billing_engine.cycles.calculator."""

from __future__ import annotations

from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest

from billing_engine.cycles.calculator import (
    CycleWindow,
    as_utc,
    count_scheduled_meals,
    cycle_for,
    format_weekdays,
    has_notice,
    is_date_in_weekday_set,
    iter_dates,
    local_today,
    monthly_cycle,
    next_cycle,
    next_renewal_date,
    parse_weekdays,
    start_of_day,
    weekday_of,
    weekly_cycle,
)
from billing_engine.models.enums import BillingPeriod, Weekday

IST = ZoneInfo("Asia/Kolkata")

# ---------------------------------------------------------------------------
# Cycle windows
# ---------------------------------------------------------------------------


class TestWeeklyCycle:
    def test_monday_starts_its_own_week(self) -> None:
        window = weekly_cycle(date(2024, 6, 10))
        assert window == CycleWindow(start=date(2024, 6, 10), end=date(2024, 6, 16))

    def test_sunday_belongs_to_preceding_monday(self) -> None:
        window = weekly_cycle(date(2024, 6, 16))
        assert window.start == date(2024, 6, 10)
        assert window.renewal_date == date(2024, 6, 17)

    def test_week_spanning_year_end(self) -> None:
        window = weekly_cycle(date(2025, 1, 1))
        assert window.start == date(2024, 12, 30)
        assert window.end == date(2025, 1, 5)
        assert window.days == 7


class TestMonthlyCycle:
    def test_leap_february(self) -> None:
        window = monthly_cycle(date(2024, 2, 14))
        assert window == CycleWindow(start=date(2024, 2, 1), end=date(2024, 2, 29))
        assert window.renewal_date == date(2024, 3, 1)

    def test_december_rolls_into_next_year(self) -> None:
        window = monthly_cycle(date(2024, 12, 31))
        assert window.renewal_date == date(2025, 1, 1)

    def test_end_is_day_before_renewal(self) -> None:
        for month in range(1, 13):
            window = monthly_cycle(date(2023, month, 15))
            assert (window.renewal_date - window.end).days == 1


class TestCycleFor:
    def test_dispatches_on_period(self) -> None:
        d = date(2024, 6, 12)
        assert cycle_for(d, BillingPeriod.WEEKLY) == weekly_cycle(d)
        assert cycle_for(d, BillingPeriod.MONTHLY) == monthly_cycle(d)

    def test_contains(self) -> None:
        window = cycle_for(date(2024, 6, 12), BillingPeriod.WEEKLY)
        assert window.contains(date(2024, 6, 10))
        assert window.contains(date(2024, 6, 16))
        assert not window.contains(date(2024, 6, 17))

    def test_next_cycle_is_adjacent(self) -> None:
        window = cycle_for(date(2024, 6, 12), BillingPeriod.WEEKLY)
        following = next_cycle(window, BillingPeriod.WEEKLY)
        assert following.start == window.renewal_date
        assert following.end == date(2024, 6, 23)


class TestNextRenewalDate:
    @pytest.mark.parametrize(
        ("from_date", "expected"),
        [
            (date(2024, 6, 8), date(2024, 6, 10)),
            (date(2024, 6, 10), date(2024, 6, 17)),
            (date(2024, 6, 16), date(2024, 6, 17)),
        ],
    )
    def test_weekly(self, from_date: date, expected: date) -> None:
        assert next_renewal_date(from_date, BillingPeriod.WEEKLY) == expected

    @pytest.mark.parametrize(
        ("from_date", "expected"),
        [
            (date(2024, 6, 1), date(2024, 7, 1)),
            (date(2024, 6, 30), date(2024, 7, 1)),
            (date(2024, 12, 15), date(2025, 1, 1)),
        ],
    )
    def test_monthly(self, from_date: date, expected: date) -> None:
        assert next_renewal_date(from_date, BillingPeriod.MONTHLY) == expected


# ---------------------------------------------------------------------------
# Weekday sets
# ---------------------------------------------------------------------------


class TestWeekdays:
    def test_weekday_of(self) -> None:
        assert weekday_of(date(2024, 6, 10)) == Weekday.MON
        assert weekday_of(date(2024, 6, 16)) == Weekday.SUN

    def test_membership_accepts_strings(self) -> None:
        assert is_date_in_weekday_set(date(2024, 6, 12), ["mon", "wed"])
        assert not is_date_in_weekday_set(date(2024, 6, 13), [Weekday.MON, Weekday.WED])

    def test_parse_is_case_and_space_tolerant(self) -> None:
        assert parse_weekdays(" Mon, wed ,FRI") == frozenset({Weekday.MON, Weekday.WED, Weekday.FRI})

    def test_parse_rejects_unknown_symbol(self) -> None:
        with pytest.raises(ValueError):
            parse_weekdays("mon,funday")

    def test_format_uses_calendar_order(self) -> None:
        assert format_weekdays([Weekday.FRI, "mon", Weekday.WED]) == "mon,wed,fri"

    def test_format_parse_roundtrip(self) -> None:
        stored = format_weekdays([Weekday.SUN, Weekday.TUE])
        assert parse_weekdays(stored) == frozenset({Weekday.SUN, Weekday.TUE})


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------


class TestCountScheduledMeals:
    def test_full_week(self) -> None:
        assert count_scheduled_meals(date(2024, 6, 10), date(2024, 6, 16), [Weekday.MON, Weekday.WED, Weekday.FRI]) == 3

    def test_partial_week(self) -> None:
        assert count_scheduled_meals(date(2024, 6, 13), date(2024, 6, 16), [Weekday.MON, Weekday.WED, Weekday.FRI]) == 1

    def test_holidays_excluded(self) -> None:
        count = count_scheduled_meals(
            date(2024, 6, 10),
            date(2024, 6, 16),
            [Weekday.MON, Weekday.WED, Weekday.FRI],
            holidays=[date(2024, 6, 12), date(2024, 6, 13)],
        )
        assert count == 2

    def test_empty_range(self) -> None:
        assert count_scheduled_meals(date(2024, 6, 16), date(2024, 6, 10), list(Weekday)) == 0

    def test_iter_dates_inclusive(self) -> None:
        dates = list(iter_dates(date(2024, 2, 28), date(2024, 3, 1)))
        assert dates == [date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)]


# ---------------------------------------------------------------------------
# Instants
# ---------------------------------------------------------------------------


class TestInstants:
    def test_start_of_day_is_local_midnight(self) -> None:
        midnight = start_of_day(date(2024, 6, 10), IST)
        assert midnight.astimezone(UTC) == datetime(2024, 6, 9, 18, 30, tzinfo=UTC)

    def test_local_today_crosses_date_line(self) -> None:
        assert local_today(datetime(2024, 6, 9, 19, 0, tzinfo=UTC), IST) == date(2024, 6, 10)

    def test_as_utc_attaches_zone_to_naive(self) -> None:
        assert as_utc(datetime(2024, 6, 8, 4, 30)).tzinfo == UTC

    def test_as_utc_converts_aware(self) -> None:
        local = datetime(2024, 6, 8, 10, 0, tzinfo=IST)
        assert as_utc(local) == datetime(2024, 6, 8, 4, 30, tzinfo=UTC)

    def test_has_notice(self) -> None:
        now = datetime(2024, 6, 8, 4, 30, tzinfo=UTC)
        assert has_notice(date(2024, 6, 10), now, 24, IST)
        assert not has_notice(date(2024, 6, 9), now, 24, IST)
        assert has_notice(date(2024, 6, 9), now, 0, IST)
