"""HTTP client for the Razorpay payment gateway.

Only the calls the engine needs are implemented: payment orders for
invoices, customers and recurring (mandate) payments for autopay groups,
and refunds for cancellation settlements.  Amounts are always integer
minor units.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from billing_engine.payments.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)

_SERVICE = "razorpay"


class PaymentGatewayClient:
    """Async client for the gateway REST API.

    Parameters
    ----------
    key_id:
        API key id (basic-auth user).
    key_secret:
        API key secret (basic-auth password).
    base_url:
        API root, overridable for tests.
    retry:
        Backoff parameters for transient failures.
    transport:
        Optional ``httpx`` transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._retry = retry or RetryConfig()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async def _call() -> dict[str, Any]:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
            return response.json()

        return await async_retry_with_backoff(_call, self._retry, service=_SERVICE)

    async def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a payment order for *amount* minor units."""
        if amount <= 0:
            raise ValueError("gateway orders require a positive amount")
        order = await self._post(
            "/orders",
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        logger.info("Created gateway order %s receipt=%s amount=%d", order.get("id"), receipt, amount)
        return order

    async def create_customer(
        self,
        *,
        name: str,
        contact: str | None = None,
        email: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "fail_existing": "0", "notes": notes or {}}
        if contact:
            payload["contact"] = contact
        if email:
            payload["email"] = email
        return await self._post("/customers", payload)

    async def create_recurring_payment(
        self,
        *,
        customer_id: str,
        token: str,
        order_id: str,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Charge a stored mandate against an existing order."""
        return await self._post(
            "/payments/create/recurring",
            {
                "customer_id": customer_id,
                "token": token,
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "recurring": "1",
                "notes": notes or {},
            },
        )

    async def create_refund(
        self,
        *,
        payment_id: str,
        amount: int,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        refund = await self._post(
            f"/payments/{payment_id}/refund",
            {"amount": amount, "speed": "normal", "notes": notes or {}},
        )
        logger.info("Created gateway refund %s for payment %s amount=%d", refund.get("id"), payment_id, amount)
        return refund
