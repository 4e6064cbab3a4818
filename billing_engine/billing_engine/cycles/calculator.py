"""Calendar and billing-cycle arithmetic.

Every other component routes its date math through this module: cycle
windows, renewal dates, weekday-set membership and meal counting.  All
functions are pure and deterministic.

Weekly cycles run Monday..Sunday.  Monthly cycles run from the 1st to the
last day of the month.  A cycle's ``renewal_date`` is the first day of the
*next* cycle, so ``end == renewal_date - 1 day`` always holds.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from billing_engine.models.enums import BillingPeriod, Weekday

_ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class CycleWindow:
    """An inclusive ``[start, end]`` billing window."""

    start: date
    end: date

    @property
    def renewal_date(self) -> date:
        return self.end + _ONE_DAY

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, d: date) -> bool:
        return self.start <= d <= self.end


# ---------------------------------------------------------------------------
# Cycle windows
# ---------------------------------------------------------------------------


def weekly_cycle(d: date) -> CycleWindow:
    """Return the Monday-aligned week containing *d*."""
    start = d - timedelta(days=d.weekday())
    return CycleWindow(start=start, end=start + timedelta(days=6))


def monthly_cycle(d: date) -> CycleWindow:
    """Return the calendar month containing *d*."""
    last_day = calendar.monthrange(d.year, d.month)[1]
    return CycleWindow(start=d.replace(day=1), end=d.replace(day=last_day))


def cycle_for(d: date, period: BillingPeriod) -> CycleWindow:
    if period == BillingPeriod.WEEKLY:
        return weekly_cycle(d)
    return monthly_cycle(d)


def next_renewal_date(from_date: date, period: BillingPeriod) -> date:
    """Return the first day of the cycle after the one containing *from_date*.

    For weekly billing that is the next Monday strictly after *from_date*
    (a Monday maps to the following Monday).  For monthly billing it is the
    next 1st strictly after *from_date* (the 1st maps to the following 1st).
    """
    if period == BillingPeriod.WEEKLY:
        return from_date + timedelta(days=7 - from_date.weekday())
    if from_date.month == 12:
        return date(from_date.year + 1, 1, 1)
    return date(from_date.year, from_date.month + 1, 1)


def next_cycle(window: CycleWindow, period: BillingPeriod) -> CycleWindow:
    """Return the cycle immediately following *window*."""
    return cycle_for(window.renewal_date, period)


# ---------------------------------------------------------------------------
# Weekday sets
# ---------------------------------------------------------------------------


def weekday_of(d: date) -> Weekday:
    return list(Weekday)[d.weekday()]


def is_date_in_weekday_set(d: date, weekdays: Iterable[Weekday | str]) -> bool:
    """Return ``True`` when *d* falls on one of *weekdays*."""
    symbol = weekday_of(d)
    return any(Weekday(w) == symbol for w in weekdays)


def parse_weekdays(raw: str | Iterable[str]) -> frozenset[Weekday]:
    """Parse a stored weekday set (``"mon,wed,fri"``) into enum members.

    Raises
    ------
    ValueError
        If any symbol is outside the mon..sun alphabet.
    """
    if isinstance(raw, str):
        parts = [p.strip().lower() for p in raw.split(",") if p.strip()]
    else:
        parts = [str(p).strip().lower() for p in raw]
    return frozenset(Weekday(p) for p in parts)


def format_weekdays(weekdays: Iterable[Weekday | str]) -> str:
    """Serialise a weekday set in calendar order."""
    members = {Weekday(w) for w in weekdays}
    return ",".join(w.value for w in Weekday if w in members)


# ---------------------------------------------------------------------------
# Date iteration and counting
# ---------------------------------------------------------------------------


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield every date in the inclusive range ``[start, end]``."""
    current = start
    while current <= end:
        yield current
        current += _ONE_DAY


def count_scheduled_meals(
    start: date,
    end: date,
    weekdays: Iterable[Weekday | str],
    holidays: Iterable[date] = (),
) -> int:
    """Count the dates in ``[start, end]`` on *weekdays*, excluding *holidays*."""
    members = frozenset(Weekday(w) for w in weekdays)
    excluded = set(holidays)
    return sum(1 for d in iter_dates(start, end) if weekday_of(d) in members and d not in excluded)


# ---------------------------------------------------------------------------
# Instants
# ---------------------------------------------------------------------------


def start_of_day(d: date, tz: ZoneInfo) -> datetime:
    """Return midnight at the start of *d* in *tz* (timezone-aware)."""
    return datetime.combine(d, time.min, tzinfo=tz)


def local_today(now: datetime, tz: ZoneInfo) -> date:
    return now.astimezone(tz).date()


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def credit_expiry(now: datetime, days: int) -> datetime:
    return now + timedelta(days=days)


def has_notice(effective: date, now: datetime, notice_hours: int, tz: ZoneInfo) -> bool:
    """Return ``True`` if *effective* starts at least *notice_hours* after *now*."""
    return start_of_day(effective, tz) >= now + timedelta(hours=notice_hours)
