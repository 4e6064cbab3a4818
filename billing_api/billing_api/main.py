"""FastAPI application entry-point for the BellyBox billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.config import APISettings, PlatformEnv, load_api_settings
from billing_api.dependencies import (
    dispose_engine,
    dispose_gateway,
    get_engine_settings,
    get_gateway,
    get_session_factory,
    init_engine,
    init_gateway,
)
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.routers import health, jobs, reconciliation, subscriptions, vendors, webhooks
from billing_api.services.renewal_scheduler import RenewalScheduler
from billing_engine.errors import (
    BillingEngineError,
    ConflictError,
    ExternalDependencyError,
    InvalidSignatureError,
    NotFoundError,
    ReconciliationGap,
    ValidationError,
)
from billing_engine.state.sqlite_adapter import create_local_tables

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _install_json_logging() -> None:
    from billing_api.middleware.json_formatter import JSONFormatter

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the store, the gateway client and the renewal scheduler.

    Missing tables are created only for ``dev`` or a local SQLite store;
    other environments are migrated with Alembic.  Shutdown releases the
    three in reverse order.
    """
    settings: APISettings = load_api_settings()
    engine_settings = get_engine_settings()
    if settings.structured_logging:
        _install_json_logging()

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Billing store ready (%s, env=%s)", "sqlite" if is_local else "postgres", settings.platform_env.value)
    if is_local or settings.platform_env is PlatformEnv.DEV:
        await create_local_tables(engine)

    init_gateway(settings, engine_settings)
    if not settings.gateway_enabled:
        logger.warning("Razorpay credentials not set; checkout orders, refunds and autopay are disabled")

    scheduler: RenewalScheduler | None = None
    if settings.renewal_scheduler_enabled:
        scheduler = RenewalScheduler(
            get_session_factory(),
            engine_settings,
            gateway=get_gateway(),
            poll_seconds=settings.renewal_scheduler_poll_seconds,
        )
        await scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await dispose_gateway()
        await dispose_engine()
        logger.info("Billing API stopped")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

# Starlette resolves handlers along the exception MRO.
_STATUS_BY_ERROR: tuple[tuple[type[BillingEngineError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_200_OK),
    (ReconciliationGap, status.HTTP_200_OK),
    (ExternalDependencyError, status.HTTP_502_BAD_GATEWAY),
    (InvalidSignatureError, status.HTTP_401_UNAUTHORIZED),
)


def error_body(exc: BillingEngineError) -> dict[str, Any]:
    """``{"error", "message", "context"}`` plus the fields a caller acts on."""
    body = exc.to_dict()
    if isinstance(exc, ConflictError) and exc.previous is not None:
        body["previous"] = exc.previous
    elif isinstance(exc, ReconciliationGap):
        body["gap_id"] = exc.gap_id
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine errors onto HTTP responses."""

    def _handler(status_code: int):
        async def handle(request: Request, exc: BillingEngineError) -> JSONResponse:
            if isinstance(exc, ExternalDependencyError):
                logger.error("Upstream %s failed after %d attempts: %s", exc.service, exc.attempts, exc.message)
            elif status_code >= 400:
                logger.info("%s %s -> %d %s", request.method, request.url.path, status_code, exc.code)
            return JSONResponse(status_code=status_code, content=error_body(exc))

        return handle

    for error_cls, status_code in _STATUS_BY_ERROR:
        app.add_exception_handler(error_cls, _handler(status_code))

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Billing store error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "database_error", "message": "Internal database error"},
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="BellyBox Billing API",
        description="Subscription billing and fulfilment for the BellyBox meal marketplace.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Idempotency-Key",
            "X-Correlation-ID",
            "X-Principal-Id",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(subscriptions.orders_router, prefix="/api/v1")
    app.include_router(subscriptions.invoices_router, prefix="/api/v1")
    app.include_router(vendors.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(reconciliation.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")

    app.include_router(health.readiness_router)

    register_exception_handlers(app)
    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
