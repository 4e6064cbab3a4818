"""Background job cancelling groups that stay paused beyond ``max_pause_days``."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import PlatformConfig
from billing_engine.errors import BillingEngineError
from billing_engine.lifecycle.state_machine import SubscriptionLifecycle, max_pause_cutoff
from billing_engine.models.lifecycle import AutoCancelReport
from billing_engine.state.database import transaction
from billing_engine.state.repository import GroupRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AutoCancelJob:
    """Cancels each overdue paused group in its own transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PlatformConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or _utcnow

    async def run(self) -> AutoCancelReport:
        now = self._clock().astimezone(UTC)
        cutoff = max_pause_cutoff(now, self._config)
        async with transaction(self._session_factory) as session:
            due = [g.group_id for g in await GroupRepository(session).list_paused_since(cutoff)]

        report = AutoCancelReport(examined=len(due))
        reason = f"paused for more than {self._config.max_pause_days} days"
        for group_id in due:
            try:
                async with transaction(self._session_factory) as session:
                    lifecycle = SubscriptionLifecycle(session, self._config, clock=self._clock)
                    await lifecycle.auto_cancel(group_id, reason=reason)
            except BillingEngineError as exc:
                logger.warning("Auto-cancel of group %s failed: %s", group_id, exc)
                report.errors[group_id] = str(exc)
                continue
            report.cancelled.append(group_id)

        if due:
            logger.info("Auto-cancel: %d examined, %d cancelled", report.examined, len(report.cancelled))
        return report
