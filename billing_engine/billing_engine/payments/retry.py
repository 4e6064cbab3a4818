"""Backoff for outbound Razorpay calls.

Only transient failures are retried: transport errors, 429 and 5xx.  A
429 or 503 carrying ``Retry-After`` waits as long as the gateway asks,
capped at :attr:`RetryConfig.max_delay`.  Anything else, and the last
transient failure, surfaces as :class:`ExternalDependencyError`.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from pydantic import BaseModel, Field

from billing_engine.errors import ExternalDependencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class RetryConfig(BaseModel):
    """How often and how patiently a gateway call is retried."""

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, gt=0.0, description="Seconds before the first retry.")
    max_delay: float = Field(default=30.0, gt=0.0)
    # Spread concurrent renewals so they do not hit the gateway in lockstep.
    jitter: bool = True


def backoff_delay(attempt: int, config: RetryConfig, retry_after: float | None = None) -> float:
    """Seconds to wait before retry number ``attempt + 1``.

    A gateway-supplied ``Retry-After`` replaces the exponential step and is
    never jittered.
    """
    if retry_after is not None:
        return min(retry_after, config.max_delay)
    delay = min(config.base_delay * 2**attempt, config.max_delay)
    return delay * random.uniform(0.5, 1.5) if config.jitter else delay  # noqa: S311


def retry_after_seconds(exc: BaseException) -> float | None:
    """Parse a numeric ``Retry-After`` header off an HTTP error, if present."""
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    raw = exc.response.headers.get("retry-after")
    try:
        return max(float(raw), 0.0) if raw is not None else None
    except ValueError:
        return None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS
    return isinstance(exc, httpx.TransportError)


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    service: str,
    should_retry: Callable[[BaseException], bool] = is_retryable,
) -> T:
    """Await ``fn()`` until it succeeds or stops being worth retrying.

    Parameters
    ----------
    fn:
        Coroutine factory, called again for every attempt.
    config:
        Attempt count and delays.
    service:
        Remote service name for logs and the raised error.
    should_retry:
        Decides whether an ``httpx.HTTPError`` is transient.

    Raises
    ------
    ExternalDependencyError
        On a permanent failure or once ``config.max_retries`` retries are spent.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except httpx.HTTPError as exc:
            if attempt >= config.max_retries or not should_retry(exc):
                raise ExternalDependencyError(
                    f"{service} call failed after {attempt + 1} attempt(s): {exc}",
                    service=service,
                    attempts=attempt + 1,
                    status_code=exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None,
                ) from exc
            delay = backoff_delay(attempt, config, retry_after_seconds(exc))
            attempt += 1
            logger.warning("%s retry %d/%d in %.2fs: %s", service, attempt, config.max_retries, delay, exc)
            await asyncio.sleep(delay)
