"""FastAPI dependencies: settings, the billing store, platform config, the
calling principal, the cron guard and the Razorpay client.

The engine, its session factory and the gateway client live on one
process-wide :class:`_Runtime`, filled by the application lifespan.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_engine.config import EngineSettings, PlatformConfig, load_platform_config, load_settings
from billing_engine.payments.gateway import PaymentGatewayClient
from billing_engine.payments.retry import RetryConfig
from billing_engine.state.database import get_engine, get_session_factory as _engine_session_factory, transaction

logger = logging.getLogger(__name__)


@dataclass
class _Runtime:
    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None
    gateway: PaymentGatewayClient | None = None


_runtime = _Runtime()

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_settings() -> APISettings:
    return load_api_settings()


@lru_cache(maxsize=1)
def get_engine_settings() -> EngineSettings:
    """``BILLING_`` settings; the defaults under the ``platform_settings`` table."""
    return load_settings()


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[EngineSettings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Billing store
# ---------------------------------------------------------------------------


def init_engine(settings: APISettings) -> AsyncEngine:
    _runtime.engine = get_engine(settings.database_url)
    _runtime.session_factory = _engine_session_factory(_runtime.engine)
    logger.info("Billing store engine opened (%s)", _runtime.engine.dialect.name)
    return _runtime.engine


async def dispose_engine() -> None:
    engine, _runtime.engine, _runtime.session_factory = _runtime.engine, None, None
    if engine is not None:
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for components that open their own transactions.

    The webhook finalizer and the batch jobs commit step by step, so they
    take this rather than the request session.
    """
    if _runtime.session_factory is None:
        raise RuntimeError("Billing store is not open; init_engine() runs in the application lifespan")
    return _runtime.session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """One request, one transaction: a preview or confirm commits or rolls back whole."""
    async with transaction(get_session_factory()) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Platform config
# ---------------------------------------------------------------------------


async def get_platform_config(session: SessionDep, engine_settings: EngineSettingsDep) -> PlatformConfig:
    """Resolve the platform config once for this request."""
    return await load_platform_config(session, engine_settings.platform_defaults())


PlatformConfigDep = Annotated[PlatformConfig, Depends(get_platform_config)]

# ---------------------------------------------------------------------------
# Principal and cron guard
# ---------------------------------------------------------------------------


async def get_principal_id(
    x_principal_id: Annotated[str | None, Header(alias="X-Principal-Id")] = None,
) -> str:
    """Return the caller identity set by the upstream auth proxy."""
    if not x_principal_id or not x_principal_id.strip():
        raise HTTPException(status_code=401, detail="X-Principal-Id header required")
    return x_principal_id.strip()


PrincipalDep = Annotated[str, Depends(get_principal_id)]


async def require_cron_secret(
    settings: SettingsDep,
    x_cron_secret: Annotated[str | None, Header(alias="X-Cron-Secret")] = None,
) -> None:
    """Gate the batch-job endpoints behind the shared cron secret."""
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        raise HTTPException(status_code=403, detail="Job endpoints are disabled")
    if not x_cron_secret or not hmac.compare_digest(expected, x_cron_secret):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


IdempotencyKeyDep = Annotated[str | None, Header(alias="Idempotency-Key")]

# ---------------------------------------------------------------------------
# Payment gateway client
# ---------------------------------------------------------------------------


def init_gateway(settings: APISettings, engine_settings: EngineSettings) -> PaymentGatewayClient | None:
    """Build the Razorpay client, or leave it unset when credentials are missing."""
    if not settings.gateway_enabled:
        return None
    logger.info("Razorpay client targets %s", settings.razorpay_base_url)
    _runtime.gateway = PaymentGatewayClient(
        settings.razorpay_key_id,
        settings.razorpay_key_secret.get_secret_value(),
        base_url=settings.razorpay_base_url,
        retry=RetryConfig(
            max_retries=engine_settings.gateway_max_retries,
            base_delay=engine_settings.gateway_retry_base_delay,
            max_delay=engine_settings.gateway_retry_max_delay,
        ),
    )
    return _runtime.gateway


async def dispose_gateway() -> None:
    gateway, _runtime.gateway = _runtime.gateway, None
    if gateway is not None:
        await gateway.close()


def get_gateway() -> PaymentGatewayClient | None:
    return _runtime.gateway


def require_gateway(gateway: Annotated[PaymentGatewayClient | None, Depends(get_gateway)]) -> PaymentGatewayClient:
    if gateway is None:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured")
    return gateway


GatewayDep = Annotated[PaymentGatewayClient, Depends(require_gateway)]
OptionalGatewayDep = Annotated[PaymentGatewayClient | None, Depends(get_gateway)]
