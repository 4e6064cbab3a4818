"""In-process scheduler for renewals and daily housekeeping.

Runs as an ``asyncio`` background task that wakes every ``poll_seconds``,
works out the local business date in the platform timezone and fires:

* the weekly renewal run on ``weekly_renewal_day``;
* the monthly renewal run on ``monthly_renewal_day``;
* credit expiry and auto-cancel of long pauses once per day;
* payment retries for unpaid renewals once per hour.

Daily jobs fire at most once per local date.  Renewal runs and payment
retries are idempotent, so a restart that re-fires a job is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import EngineSettings, PlatformConfig, load_platform_config
from billing_engine.cycles.calculator import local_today, weekday_of
from billing_engine.ledger.credit_ledger import CreditLedger
from billing_engine.lifecycle.auto_cancel import AutoCancelJob
from billing_engine.models.enums import BillingPeriod
from billing_engine.payments.dunning import PaymentRetryJob
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.renewal.runner import RenewalRunner
from billing_engine.state.database import transaction

logger = logging.getLogger(__name__)

_HOUSEKEEPING = "housekeeping"
_PAYMENT_RETRY = "payment_retry"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def due_periods(today: date, config: PlatformConfig) -> list[BillingPeriod]:
    """Return the billing periods whose renewal day is *today*."""
    due: list[BillingPeriod] = []
    if weekday_of(today) == config.weekly_renewal_day:
        due.append(BillingPeriod.WEEKLY)
    if today.day == config.monthly_renewal_day:
        due.append(BillingPeriod.MONTHLY)
    return due


class RenewalScheduler:
    """AsyncIO background task that fires renewal and housekeeping jobs.

    Parameters
    ----------
    session_factory:
        Factory used for the config lookup and handed to each job.
    engine_settings:
        Source of the platform defaults and the renewal pool sizes.
    gateway:
        Optional gateway client for autopay requests and payment retries.
    poll_seconds:
        Sleep between checks.
    clock:
        Returns the current instant; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine_settings: EngineSettings,
        *,
        gateway: PaymentGatewayClient | None = None,
        poll_seconds: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine_settings = engine_settings
        self._gateway = gateway
        self._poll_seconds = poll_seconds
        self._clock = clock or _utcnow
        self._last_run: dict[str, date] = {}
        self._last_retry_hour: datetime | None = None
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._runner: RenewalRunner | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("RenewalScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("RenewalScheduler started (poll every %.0fs)", self._poll_seconds)

    async def stop(self) -> None:
        """Stop the loop; an in-flight renewal run stops scheduling new groups."""
        self._running = False
        if self._runner is not None:
            self._runner.stop()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("RenewalScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("RenewalScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("RenewalScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._poll_seconds)

    async def _load_config(self) -> PlatformConfig:
        async with transaction(self._session_factory) as session:
            return await load_platform_config(session, self._engine_settings.platform_defaults())

    async def run_due(self) -> list[str]:
        """Fire every job that is due and has not fired yet; return their names."""
        config = await self._load_config()
        today = local_today(self._clock(), config.tz)
        fired: list[str] = []

        if self._last_run.get(_HOUSEKEEPING) != today:
            await self._housekeeping(config)
            self._last_run[_HOUSEKEEPING] = today
            fired.append(_HOUSEKEEPING)

        for period in due_periods(today, config):
            if self._last_run.get(period.value) == today:
                continue
            self._runner = RenewalRunner(
                self._session_factory,
                config,
                concurrency=self._engine_settings.renewal_concurrency,
                batch_size=self._engine_settings.renewal_batch_size,
                gateway=self._gateway,
                clock=self._clock,
            )
            try:
                report = await self._runner.run_renewals(period, today)
            finally:
                self._runner = None
            if not report.aborted:
                self._last_run[period.value] = today
            fired.append(period.value)

        hour = self._clock().astimezone(UTC).replace(minute=0, second=0, microsecond=0)
        if self._last_retry_hour != hour:
            retry_job = PaymentRetryJob(self._session_factory, config, gateway=self._gateway, clock=self._clock)
            retries = await retry_job.run()
            if retries.errors:
                logger.warning("Payment retry finished with %d errors", len(retries.errors))
            self._last_retry_hour = hour
            fired.append(_PAYMENT_RETRY)
        return fired

    async def _housekeeping(self, config: PlatformConfig) -> None:
        async with transaction(self._session_factory) as session:
            await CreditLedger(session, config, clock=self._clock).expire_due()
        report = await AutoCancelJob(self._session_factory, config, clock=self._clock).run()
        if report.errors:
            logger.warning("Auto-cancel finished with %d errors", len(report.errors))
