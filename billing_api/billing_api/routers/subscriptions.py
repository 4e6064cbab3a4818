"""Subscription routes: checkout, pause/resume/cancel, skips and payment orders.

Every lifecycle action is exposed as a *preview* (read-only, safe to call
repeatedly) and a *confirm* (mutating, requires ``confirm: true``).  A
confirm carrying an ``Idempotency-Key`` header returns the original result
when retried.
"""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter
from pydantic import BaseModel, Field

from billing_api.dependencies import (
    GatewayDep,
    IdempotencyKeyDep,
    PlatformConfigDep,
    PrincipalDep,
    SessionDep,
)
from billing_engine.lifecycle.checkout import CheckoutService
from billing_engine.lifecycle.state_machine import SubscriptionLifecycle
from billing_engine.models.billing import CheckoutRequest, CheckoutResult, PaymentOrder
from billing_engine.models.enums import RefundPreference
from billing_engine.models.lifecycle import (
    CancelPreview,
    CancelResult,
    PausePreview,
    PauseResult,
    ResumePreview,
    ResumeResult,
    SkipResult,
)
from billing_engine.orders.skips import SkipService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])
invoices_router = APIRouter(prefix="/invoices", tags=["invoices"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class PauseRequest(BaseModel):
    pause_date: date = Field(..., description="First day without deliveries.")
    confirm: bool = Field(default=False, description="Must be true on the confirm route.")


class ResumeRequest(BaseModel):
    resume_date: date = Field(..., description="First day deliveries restart.")
    confirm: bool = Field(default=False, description="Must be true on the confirm route.")


class CancelRequest(BaseModel):
    cancel_date: date = Field(..., description="First day without deliveries.")
    reason: str = Field(default="customer_request", max_length=500)
    refund_preference: RefundPreference | None = Field(
        default=None, description="Settlement form; defaults per the platform refund policy."
    )
    confirm: bool = Field(default=False, description="Must be true on the confirm route.")


class AutopayRequest(BaseModel):
    name: str = Field(..., min_length=1)
    contact: str | None = None
    email: str | None = None


class MandateRequest(BaseModel):
    mandate_ref: str = Field(..., min_length=1, description="Recurring token confirmed by the gateway.")


class CustomerResponse(BaseModel):
    group_id: str
    gateway_customer_id: str


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@router.post("/checkout", response_model=CheckoutResult, status_code=201)
async def create_checkout(
    body: CheckoutRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    principal_id: PrincipalDep,
) -> CheckoutResult:
    """Create a subscription group and the invoice for its first cycle."""
    result = await CheckoutService(session, config).create_subscription_checkout(body)
    logger.info("Checkout %s created group %s by %s", result.invoice_id, result.group_id, principal_id)
    return result


@invoices_router.post("/{invoice_id}/payment-order", response_model=PaymentOrder)
async def create_payment_order(
    invoice_id: str,
    session: SessionDep,
    config: PlatformConfigDep,
    gateway: GatewayDep,
    _principal: PrincipalDep,
) -> PaymentOrder:
    """Create (once) the gateway order the customer pays against."""
    return await CheckoutService(session, config).attach_payment_order(invoice_id, gateway)


@router.post("/{group_id}/autopay/customer", response_model=CustomerResponse)
async def register_autopay(
    group_id: str,
    body: AutopayRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    gateway: GatewayDep,
    _principal: PrincipalDep,
) -> CustomerResponse:
    customer_id = await CheckoutService(session, config).register_autopay(
        group_id, gateway, name=body.name, contact=body.contact, email=body.email
    )
    return CustomerResponse(group_id=group_id, gateway_customer_id=customer_id)


@router.post("/{group_id}/autopay/mandate", status_code=204)
async def record_mandate(
    group_id: str,
    body: MandateRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    _principal: PrincipalDep,
) -> None:
    await CheckoutService(session, config).record_mandate(group_id, body.mandate_ref)


# ---------------------------------------------------------------------------
# Pause
# ---------------------------------------------------------------------------


@router.post("/{group_id}/pause/preview", response_model=PausePreview)
async def preview_pause(
    group_id: str,
    body: PauseRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    _principal: PrincipalDep,
) -> PausePreview:
    return await SubscriptionLifecycle(session, config).preview_pause(group_id, body.pause_date)


@router.post("/{group_id}/pause/confirm", response_model=PauseResult)
async def confirm_pause(
    group_id: str,
    body: PauseRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    principal_id: PrincipalDep,
    idempotency_key: IdempotencyKeyDep = None,
) -> PauseResult:
    return await SubscriptionLifecycle(session, config).confirm_pause(
        group_id,
        body.pause_date,
        principal_id=principal_id,
        confirm=body.confirm,
        idempotency_key=idempotency_key,
    )


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


@router.post("/{group_id}/resume/preview", response_model=ResumePreview)
async def preview_resume(
    group_id: str,
    body: ResumeRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    _principal: PrincipalDep,
) -> ResumePreview:
    return await SubscriptionLifecycle(session, config).preview_resume(group_id, body.resume_date)


@router.post("/{group_id}/resume/confirm", response_model=ResumeResult)
async def confirm_resume(
    group_id: str,
    body: ResumeRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    principal_id: PrincipalDep,
    idempotency_key: IdempotencyKeyDep = None,
) -> ResumeResult:
    return await SubscriptionLifecycle(session, config).confirm_resume(
        group_id,
        body.resume_date,
        principal_id=principal_id,
        confirm=body.confirm,
        idempotency_key=idempotency_key,
    )


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


@router.post("/{group_id}/cancel/preview", response_model=CancelPreview)
async def preview_cancel(
    group_id: str,
    body: CancelRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    _principal: PrincipalDep,
) -> CancelPreview:
    return await SubscriptionLifecycle(session, config).preview_cancel(group_id, body.cancel_date)


@router.post("/{group_id}/cancel/confirm", response_model=CancelResult)
async def confirm_cancel(
    group_id: str,
    body: CancelRequest,
    session: SessionDep,
    config: PlatformConfigDep,
    principal_id: PrincipalDep,
    idempotency_key: IdempotencyKeyDep = None,
) -> CancelResult:
    return await SubscriptionLifecycle(session, config).confirm_cancel(
        group_id,
        body.cancel_date,
        reason=body.reason,
        refund_preference=body.refund_preference,
        principal_id=principal_id,
        confirm=body.confirm,
        idempotency_key=idempotency_key,
    )


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------


@orders_router.post("/{order_id}/skip", response_model=SkipResult)
async def skip_meal(
    order_id: str,
    session: SessionDep,
    config: PlatformConfigDep,
    principal_id: PrincipalDep,
) -> SkipResult:
    """Skip one scheduled meal before its cutoff."""
    return await SkipService(session, config).skip_meal(order_id, principal_id=principal_id)
