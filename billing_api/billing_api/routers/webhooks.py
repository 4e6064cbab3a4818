"""Razorpay webhook receiver.

The raw body is verified against ``X-Razorpay-Signature`` before anything
is parsed.  A bad or missing signature is answered 401; every verified
delivery is answered 200 with the finalizer outcome (``processed``,
``duplicate``, ``ignored``, ``not_found`` or ``reconciliation_gap``) so the
gateway does not redeliver events that were already accounted for.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Header, Request

from billing_api.dependencies import PlatformConfigDep, SessionFactoryDep, SettingsDep
from billing_engine.payments.finalizer import InvoiceFinalizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    settings: SettingsDep,
    config: PlatformConfigDep,
    session_factory: SessionFactoryDep,
    x_razorpay_signature: Annotated[str | None, Header(alias="X-Razorpay-Signature")] = None,
) -> dict[str, Any]:
    """Apply one gateway payment event to its invoice.

    :class:`~billing_engine.errors.InvalidSignatureError` propagates to the
    application's 401 handler.
    """
    body = await request.body()
    finalizer = InvoiceFinalizer(
        session_factory,
        config,
        webhook_secret=settings.razorpay_webhook_secret.get_secret_value(),
    )
    result = await finalizer.handle(body, x_razorpay_signature)
    logger.info(
        "Webhook handled: outcome=%s invoice=%s",
        result.outcome.value,
        result.invoice_id,
    )
    return result.model_dump(mode="json")
