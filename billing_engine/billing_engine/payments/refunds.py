"""Submission of pending cancellation refunds to the payment gateway."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import ExternalDependencyError
from billing_engine.models.enums import RefundStatus
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.state.database import transaction
from billing_engine.state.repository import RefundRepository

logger = logging.getLogger(__name__)


class RefundRunReport(BaseModel):
    examined: int = 0
    processed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict, description="refund_id -> reason")
    retry_later: dict[str, str] = Field(default_factory=dict, description="refund_id -> transient error")


class RefundProcessor:
    """Pushes ``pending`` refund requests to the gateway.

    A refund without a gateway payment reference cannot be submitted and
    is marked ``failed`` for manual handling.  Transient gateway failures
    leave the request ``pending`` so the next run retries it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGatewayClient,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway

    async def process_pending(self, limit: int = 100) -> RefundRunReport:
        async with transaction(self._session_factory) as session:
            pending = [
                (r.refund_id, r.gateway_payment_id, r.amount, r.group_id)
                for r in await RefundRepository(session).list_pending(limit)
            ]

        report = RefundRunReport(examined=len(pending))
        for refund_id, payment_id, amount, group_id in pending:
            if not payment_id:
                await self._complete(refund_id, RefundStatus.FAILED, failure_reason="no captured payment to refund")
                report.failed[refund_id] = "no captured payment to refund"
                continue
            try:
                refund = await self._gateway.create_refund(
                    payment_id=payment_id,
                    amount=amount,
                    notes={"refund_id": refund_id, "group_id": group_id},
                )
            except ExternalDependencyError as exc:
                if exc.status_code is not None and 400 <= exc.status_code < 500 and exc.status_code != 429:
                    await self._complete(refund_id, RefundStatus.FAILED, failure_reason=exc.message)
                    report.failed[refund_id] = exc.message
                else:
                    logger.warning("Refund %s deferred: %s", refund_id, exc.message, extra={"refund_id": refund_id})
                    report.retry_later[refund_id] = exc.message
                continue
            await self._complete(refund_id, RefundStatus.PROCESSED, gateway_refund_id=refund.get("id"))
            report.processed.append(refund_id)

        logger.info(
            "Refund run: %d examined, %d processed, %d failed, %d deferred",
            report.examined,
            len(report.processed),
            len(report.failed),
            len(report.retry_later),
        )
        return report

    async def _complete(
        self,
        refund_id: str,
        status: RefundStatus,
        *,
        gateway_refund_id: str | None = None,
        failure_reason: str | None = None,
    ) -> None:
        async with transaction(self._session_factory) as session:
            await RefundRepository(session).complete(
                refund_id,
                status=status.value,
                gateway_refund_id=gateway_refund_id,
                failure_reason=failure_reason,
            )
