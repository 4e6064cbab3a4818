"""Credit ledger: issuance, lookup, consumption and expiry of credits.

Credits are whole units.  A credit is either consumed entirely or left
untouched; there is no partial consumption and no remainder credit.  When
credits are applied against an amount they are taken soonest-expiring
first, and the last credit taken may overshoot the amount.  For credits of
uniform face value ``u`` this selects exactly
``min(available, ceil(amount / u))`` credits.

Expiry is enforced two ways: every read filters on ``expires_at > now``
(lazy), and :meth:`CreditLedger.expire_due` marks overdue rows ``expired``
(sweep).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import PlatformConfig
from billing_engine.cycles.calculator import as_utc, credit_expiry
from billing_engine.errors import ValidationError
from billing_engine.models.billing import CreditApplication, CreditRecord
from billing_engine.models.enums import CreditReason, CreditStatus
from billing_engine.state.repository import CreditRepository
from billing_engine.state.tables import CreditTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def to_record(row: CreditTable) -> CreditRecord:
    return CreditRecord(
        credit_id=row.credit_id,
        consumer_id=row.consumer_id,
        group_id=row.group_id,
        subscription_id=row.subscription_id,
        amount=row.amount,
        reason=CreditReason(row.reason),
        status=CreditStatus(row.status),
        issued_at=as_utc(row.issued_at),
        expires_at=as_utc(row.expires_at),
        source_order_id=row.source_order_id,
    )


def plan_application(credits: Sequence[CreditRecord], amount: int) -> CreditApplication:
    """Select whole credits, soonest-expiring first, until *amount* is covered.

    Pure: used by previews to project a consumption without touching the
    store, and by :meth:`CreditLedger.consume` to decide what to consume.
    """
    if amount <= 0:
        return CreditApplication()
    ordered = sorted(credits, key=lambda c: (c.expires_at, c.issued_at, c.credit_id))
    chosen: list[str] = []
    applied = 0
    for credit in ordered:
        if applied >= amount:
            break
        chosen.append(credit.credit_id)
        applied += credit.amount
    return CreditApplication(credit_ids=chosen, applied_amount=applied)


class CreditLedger:
    """Credit operations bound to one session and one platform config.

    Parameters
    ----------
    session:
        Active session; the caller owns the transaction.
    config:
        Platform config supplying ``credit_expiry_days``.
    clock:
        Returns the current instant; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: PlatformConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._clock = clock or _utcnow
        self._repo = CreditRepository(session)

    def now(self) -> datetime:
        return self._clock().astimezone(UTC)

    def expiry_from_now(self) -> datetime:
        return credit_expiry(self.now(), self._config.credit_expiry_days)

    # -- issuance ------------------------------------------------------

    async def issue(
        self,
        *,
        consumer_id: str,
        group_id: str,
        amount: int,
        reason: CreditReason,
        subscription_id: str | None = None,
        source_order_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> str:
        """Issue one credit and return its id."""
        if amount <= 0:
            raise ValidationError("credit amount must be positive", amount=amount)
        now = self.now()
        row = await self._repo.insert(
            consumer_id=consumer_id,
            group_id=group_id,
            subscription_id=subscription_id,
            amount=amount,
            reason=reason.value,
            status=CreditStatus.AVAILABLE.value,
            source_order_id=source_order_id,
            issued_at=now,
            expires_at=expires_at or self.expiry_from_now(),
        )
        logger.debug("Issued %s credit %s amount=%d group=%s", reason.value, row.credit_id, amount, group_id)
        return row.credit_id

    # -- reads ---------------------------------------------------------

    async def list_available(
        self,
        *,
        subscription_id: str | None = None,
        group_id: str | None = None,
    ) -> list[CreditRecord]:
        """Return available, unexpired credits ordered soonest-expiring first."""
        if subscription_id is None and group_id is None:
            raise ValidationError("list_available requires subscription_id or group_id")
        rows = await self._repo.list_available(now=self.now(), group_id=group_id, subscription_id=subscription_id)
        return [to_record(r) for r in rows]

    async def balance(self, group_id: str) -> int:
        return await self._repo.balance(now=self.now(), group_id=group_id)

    # -- consumption ---------------------------------------------------

    async def consume(
        self,
        credit_ids: Sequence[str],
        amount: int,
        *,
        consumed_by: str,
    ) -> CreditApplication:
        """Consume whole credits from *credit_ids* to cover up to *amount*.

        Only credits that are still available at update time are consumed;
        a credit taken by a concurrent transaction is simply not counted.

        Returns
        -------
        CreditApplication
            The ids actually consumed and their total value.
        """
        if not credit_ids or amount <= 0:
            return CreditApplication()
        rows = await self._repo.list_available(now=self.now(), credit_ids=credit_ids)
        candidates = [to_record(r) for r in rows]
        plan = plan_application(candidates, amount)
        consumed = await self._repo.mark_consumed(plan.credit_ids, consumed_by=consumed_by, now=self.now())
        by_id = {c.credit_id: c for c in candidates}
        applied = sum(by_id[cid].amount for cid in consumed)
        if len(consumed) != len(plan.credit_ids):
            logger.warning(
                "Consumed %d of %d planned credits for %s; others were taken concurrently",
                len(consumed),
                len(plan.credit_ids),
                consumed_by,
            )
        return CreditApplication(credit_ids=consumed, applied_amount=applied)

    async def consume_all(self, group_id: str, *, consumed_by: str) -> CreditApplication:
        """Consume every available credit on *group_id* (cancellation settlement)."""
        available = await self.list_available(group_id=group_id)
        consumed = await self._repo.mark_consumed(
            [c.credit_id for c in available], consumed_by=consumed_by, now=self.now()
        )
        by_id = {c.credit_id: c for c in available}
        return CreditApplication(credit_ids=consumed, applied_amount=sum(by_id[c].amount for c in consumed))

    async def consume_for_orders(self, order_ids: Sequence[str], *, consumed_by: str) -> CreditApplication:
        """Consume the credits that were issued for *order_ids*."""
        rows = await self._repo.list_by_source_orders(order_ids)
        consumed = await self._repo.mark_consumed([r.credit_id for r in rows], consumed_by=consumed_by, now=self.now())
        by_id = {r.credit_id: r.amount for r in rows}
        return CreditApplication(credit_ids=consumed, applied_amount=sum(by_id[c] for c in consumed))

    # -- expiry --------------------------------------------------------

    async def expire_due(self) -> int:
        """Mark every available credit past its expiry as ``expired``."""
        count = await self._repo.expire_due(self.now())
        if count:
            logger.info("Expired %d credits", count)
        return count
