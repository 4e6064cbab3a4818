"""Preview and result models for lifecycle transitions.

Every transition is exposed as a read-only *preview* and a side-effecting
*confirm*.  The preview models carry exactly the figures a caller needs
to show a cost estimate; the result models record what was committed and
are stored verbatim in the lifecycle event log so an idempotent retry can
return them unchanged.
"""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from billing_engine.models.enums import RefundPreference, ResumeScenario


class PausePreview(BaseModel):
    group_id: str
    pause_date: date
    cycle_end: date = Field(..., description="Last day of the cycle in effect at the pause date.")
    orders_count: int = Field(..., ge=0, description="Scheduled orders that would be cancelled.")
    credits_count: int = Field(..., ge=0, description="Credits that would be issued (one per order).")
    total_amount: int = Field(..., ge=0, description="Total credit value in minor units.")
    expires_at: datetime = Field(..., description="Expiry of the credits if issued now.")


class PauseResult(BaseModel):
    group_id: str
    pause_date: date
    orders_cancelled: int = Field(..., ge=0)
    credits_created: int = Field(..., ge=0)
    total_credit_amount: int = Field(..., ge=0)
    credit_ids: list[str] = Field(default_factory=list)


class ResumePreview(BaseModel):
    group_id: str
    resume_date: date
    scenario: ResumeScenario
    requires_payment: bool = Field(..., description="True when an invoice with a residual balance will be created.")
    estimated_amount: int = Field(..., ge=0, description="Gross value of the meals in the new cycle.")
    credits_available: int = Field(..., ge=0, description="Number of available credits on the group.")
    credits_to_apply: int = Field(..., ge=0, description="Number of credits that would be consumed.")
    credit_amount_applied: int = Field(..., ge=0, description="Value of the credits that would be consumed.")
    residual_amount: int = Field(..., ge=0, description="Amount payable after credits.")
    new_cycle_start: date | None = None
    new_cycle_end: date | None = None


class ResumeResult(BaseModel):
    group_id: str
    resume_date: date
    scenario: ResumeScenario
    new_cycle_id: str | None = None
    invoice_id: str | None = None
    invoice_amount: int = Field(default=0, ge=0)
    credits_applied: int = Field(default=0, ge=0)
    credit_amount_applied: int = Field(default=0, ge=0)
    orders_reinstated: int = Field(default=0, ge=0)
    orders_created: int = Field(default=0, ge=0)


class CancelPreview(BaseModel):
    group_id: str
    cancel_date: date
    orders_count: int = Field(..., ge=0)
    remaining_meals_value: int = Field(..., ge=0)
    existing_credits_value: int = Field(..., ge=0)
    total_refund_credit: int = Field(..., ge=0)
    refund_options: list[RefundPreference] = Field(..., description="Settlement forms permitted by the refund policy.")


class CancelResult(BaseModel):
    group_id: str
    cancel_date: date
    refund_preference: RefundPreference
    refund_amount: int = Field(..., ge=0, description="Total settled as a refund request or a store credit.")
    orders_cancelled: int = Field(..., ge=0)
    credits_settled: int = Field(..., ge=0, description="Existing credits folded into the settlement.")
    credit_id: str | None = None
    refund_id: str | None = None


class SkipResult(BaseModel):
    order_id: str
    service_date: date
    credited: bool
    credit_id: str | None = None
    credit_amount: int = 0
    skips_remaining: int = Field(..., ge=0)


class AutoCancelReport(BaseModel):
    examined: int = 0
    cancelled: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
