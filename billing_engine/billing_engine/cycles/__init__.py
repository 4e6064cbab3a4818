"""Pure calendar and billing-cycle arithmetic."""

from billing_engine.cycles.calculator import (
    CycleWindow,
    count_scheduled_meals,
    cycle_for,
    format_weekdays,
    is_date_in_weekday_set,
    iter_dates,
    monthly_cycle,
    next_cycle,
    next_renewal_date,
    parse_weekdays,
    weekly_cycle,
)

__all__ = [
    "CycleWindow",
    "count_scheduled_meals",
    "cycle_for",
    "format_weekdays",
    "is_date_in_weekday_set",
    "iter_dates",
    "monthly_cycle",
    "next_cycle",
    "next_renewal_date",
    "parse_weekdays",
    "weekly_cycle",
]
