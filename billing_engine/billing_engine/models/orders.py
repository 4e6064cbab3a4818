"""Order generation reports."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field

from billing_engine.models.enums import SkipReason


class SkippedDate(BaseModel):
    service_date: date
    reason: SkipReason


class SubscriptionOutcome(BaseModel):
    """What happened to one subscription line during a generation pass."""

    subscription_id: str
    slot: str
    created: list[date] = Field(default_factory=list)
    skipped: list[SkippedDate] = Field(default_factory=list)
    error: str | None = None


class OrderGenerationReport(BaseModel):
    """Result of expanding a cycle into orders.

    Partial success is the expected common case, so the report lists every
    per-subscription outcome rather than a single pass/fail flag.
    """

    cycle_id: str
    created: int = Field(default=0, ge=0)
    outcomes: list[SubscriptionOutcome] = Field(default_factory=list)

    @property
    def skipped(self) -> int:
        return sum(len(o.skipped) for o in self.outcomes)

    @property
    def errors(self) -> list[str]:
        return [f"{o.subscription_id}: {o.error}" for o in self.outcomes if o.error]

    def skipped_for(self, reason: SkipReason) -> list[SkippedDate]:
        return [s for o in self.outcomes for s in o.skipped if s.reason == reason]


class HolidayAdjustment(BaseModel):
    vendor_id: str
    holiday_date: date
    slot: str | None = None
    orders_skipped: int = 0
    credits_issued: int = 0
    credit_amount: int = 0
