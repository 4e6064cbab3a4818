"""BellyBox billing CLI -- Typer-based operator interface.

Runs the engine's batch jobs directly against the database (cron-style):
renewals, payment retries for unpaid renewals, credit expiry, auto-cancel of
long pauses, refund submission and the reconciliation queue.  Human-readable output goes to *stderr* via Rich;
``--json`` switches to machine-readable JSON on *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from typing import Any, TypeVar

import typer
from pydantic import BaseModel
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_cli.display import (
    display_auto_cancel_report,
    display_gaps,
    display_payment_retry_report,
    display_refund_report,
    display_renewal_report,
)
from billing_engine.config import EngineSettings, PlatformConfig, load_platform_config, load_settings
from billing_engine.cycles.calculator import local_today
from billing_engine.errors import BillingEngineError
from billing_engine.models.enums import BillingPeriod

T = TypeVar("T")

JobFn = Callable[[async_sessionmaker[AsyncSession], PlatformConfig, EngineSettings], Awaitable[T]]

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="bellybox-billing",
    help="BellyBox billing engine - operator jobs",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (defaults to BILLING_DATABASE_URL).",
        envvar="BILLING_DATABASE_URL",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> EngineSettings:
    if _database_url:
        return load_settings(database_url=_database_url)
    return load_settings()


def _run_job(job: JobFn[T]) -> T:
    """Run *job* with a session factory and the resolved platform config.

    Engine errors end the command with exit code 1.
    """
    from billing_engine.state.database import get_engine, get_session_factory, transaction

    settings = _settings()

    async def _main() -> T:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            factory = get_session_factory(engine)
            async with transaction(factory) as session:
                config = await load_platform_config(session, settings.platform_defaults())
            return await job(factory, config, settings)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except BillingEngineError as exc:
        console.print(f"[red]{exc.code}: {exc.message}[/red]")
        raise typer.Exit(code=1) from exc


def _parse_date(value: str, label: str) -> date:
    """Parse a YYYY-MM-DD string into a :class:`date`, raising on failure."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} date '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _emit_json(payload: BaseModel | dict[str, Any] | list[Any]) -> None:
    if isinstance(payload, BaseModel):
        data: Any = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        data = [p.model_dump(mode="json") if isinstance(p, BaseModel) else p for p in payload]
    else:
        data = payload
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# init-db / serve
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create every table that does not exist yet (local and dev databases).

    Production databases are migrated with Alembic instead.
    """
    from billing_engine.state.database import get_engine
    from billing_engine.state.sqlite_adapter import create_local_tables

    settings = _settings()

    async def _main() -> list[str]:
        engine = get_engine(settings.database_url)
        try:
            return await create_local_tables(engine)
        finally:
            await engine.dispose()

    tables = asyncio.run(_main())
    if _json_output:
        _emit_json({"status": "ok", "tables": tables})
    else:
        console.print(f"[green]Database ready[/green] ({len(tables)} tables).")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind the API server to."),
    port: int = typer.Option(8000, "--port", "-p", help="API server port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload on code changes."),
) -> None:
    """Run the billing API with uvicorn."""
    import uvicorn

    console.print(f"Serving billing API on [bold]http://{host}:{port}[/bold]")
    uvicorn.run("billing_api.main:app", host=host, port=port, reload=reload, log_level="info")


# ---------------------------------------------------------------------------
# renew
# ---------------------------------------------------------------------------


@app.command()
def renew(
    period: BillingPeriod = typer.Option(..., "--period", help="Billing period to renew."),
    run_date: str | None = typer.Option(
        None,
        "--run-date",
        help="Business date of the run (YYYY-MM-DD); defaults to today in the platform timezone.",
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", min=1, help="Groups processed at once (defaults to BILLING_RENEWAL_CONCURRENCY)."
    ),
) -> None:
    """Open the next billing cycle for every due group of one period."""
    from billing_engine.renewal.runner import RenewalRunner

    parsed = _parse_date(run_date, "run") if run_date else None

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, settings: EngineSettings):
        runner = RenewalRunner(
            factory,
            config,
            concurrency=concurrency or settings.renewal_concurrency,
            batch_size=settings.renewal_batch_size,
        )
        day = parsed or local_today(datetime.now(UTC), config.tz)
        return await runner.run_renewals(period, day), config.currency

    report, currency = _run_job(_job)
    if _json_output:
        _emit_json(report)
    else:
        display_renewal_report(console, report, currency)
    if report.errors:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# expire-credits / auto-cancel-paused
# ---------------------------------------------------------------------------


@app.command("expire-credits")
def expire_credits() -> None:
    """Mark every available credit past its expiry as expired."""
    from billing_engine.ledger.credit_ledger import CreditLedger
    from billing_engine.state.database import transaction

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, _: EngineSettings) -> int:
        async with transaction(factory) as session:
            return await CreditLedger(session, config).expire_due()

    expired = _run_job(_job)
    if _json_output:
        _emit_json({"expired": expired})
    else:
        console.print(f"Expired [bold]{expired}[/bold] credits.")


@app.command("auto-cancel-paused")
def auto_cancel_paused() -> None:
    """Cancel subscriptions paused for longer than max_pause_days."""
    from billing_engine.lifecycle.auto_cancel import AutoCancelJob

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, _: EngineSettings):
        return await AutoCancelJob(factory, config).run()

    report = _run_job(_job)
    if _json_output:
        _emit_json(report)
    else:
        display_auto_cancel_report(console, report)
    if report.errors:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Reconciliation queue
# ---------------------------------------------------------------------------


@app.command()
def gaps(
    limit: int = typer.Option(50, "--limit", min=1, max=500, help="Maximum number of gaps to list."),
) -> None:
    """List unresolved reconciliation gaps (paid invoices without orders)."""
    from billing_engine.payments.reconciliation import ReconciliationService

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, _: EngineSettings):
        return await ReconciliationService(factory, config).list_unresolved(limit=limit)

    records = _run_job(_job)
    if _json_output:
        _emit_json(records)
    else:
        display_gaps(console, records)


@app.command("retry-gap")
def retry_gap(
    gap_id: str = typer.Argument(..., help="Reconciliation gap identifier."),
    resolved_by: str = typer.Option(..., "--by", help="Operator identity recorded on the gap."),
) -> None:
    """Re-run order generation for a gap and resolve it on success."""
    from billing_engine.payments.reconciliation import ReconciliationService

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, _: EngineSettings):
        return await ReconciliationService(factory, config).retry(gap_id, resolved_by=resolved_by)

    report = _run_job(_job)
    if _json_output:
        _emit_json(report)
    else:
        console.print(f"[green]Gap {gap_id} resolved[/green]: {report.created} orders created.")


@app.command("resolve-gap")
def resolve_gap(
    gap_id: str = typer.Argument(..., help="Reconciliation gap identifier."),
    resolved_by: str = typer.Option(..., "--by", help="Operator identity recorded on the gap."),
) -> None:
    """Close a gap that was fixed by hand, without retrying."""
    from billing_engine.payments.reconciliation import ReconciliationService

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, _: EngineSettings) -> bool:
        return await ReconciliationService(factory, config).resolve(gap_id, resolved_by=resolved_by)

    resolved = _run_job(_job)
    if _json_output:
        _emit_json({"gap_id": gap_id, "resolved": resolved})
    elif resolved:
        console.print(f"[green]Gap {gap_id} resolved.[/green]")
    else:
        console.print(f"[yellow]Gap {gap_id} was already resolved.[/yellow]")


# ---------------------------------------------------------------------------
# process-refunds
# ---------------------------------------------------------------------------


@app.command("process-refunds")
def process_refunds(
    limit: int = typer.Option(100, "--limit", min=1, max=1000, help="Maximum refunds submitted in this run."),
    key_id: str = typer.Option("", "--key-id", help="Razorpay key id.", envvar="API_RAZORPAY_KEY_ID"),
    key_secret: str = typer.Option(
        "", "--key-secret", help="Razorpay key secret.", envvar="API_RAZORPAY_KEY_SECRET", show_default=False
    ),
) -> None:
    """Submit pending cancellation refunds to the payment gateway."""
    from billing_engine.payments.gateway import PaymentGatewayClient
    from billing_engine.payments.refunds import RefundProcessor
    from billing_engine.payments.retry import RetryConfig

    if not key_id or not key_secret:
        console.print("[red]Razorpay credentials are required (--key-id/--key-secret).[/red]")
        raise typer.Exit(code=3)

    async def _job(factory: async_sessionmaker[AsyncSession], _: PlatformConfig, settings: EngineSettings):
        gateway = PaymentGatewayClient(
            key_id,
            key_secret,
            retry=RetryConfig(
                max_retries=settings.gateway_max_retries,
                base_delay=settings.gateway_retry_base_delay,
                max_delay=settings.gateway_retry_max_delay,
            ),
        )
        try:
            return await RefundProcessor(factory, gateway).process_pending(limit=limit)
        finally:
            await gateway.close()

    report = _run_job(_job)
    if _json_output:
        _emit_json(report)
    else:
        display_refund_report(console, report)
    if report.failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# payment-retry
# ---------------------------------------------------------------------------


@app.command("payment-retry")
def payment_retry(
    key_id: str = typer.Option("", "--key-id", help="Razorpay key id.", envvar="API_RAZORPAY_KEY_ID"),
    key_secret: str = typer.Option(
        "", "--key-secret", help="Razorpay key secret.", envvar="API_RAZORPAY_KEY_SECRET", show_default=False
    ),
) -> None:
    """Retry unpaid renewal invoices; pause groups still unpaid after 72 hours.

    Without gateway credentials no payment is attempted, but overdue groups
    are still paused.
    """
    from billing_engine.payments.dunning import PaymentRetryJob
    from billing_engine.payments.gateway import PaymentGatewayClient
    from billing_engine.payments.retry import RetryConfig

    async def _job(factory: async_sessionmaker[AsyncSession], config: PlatformConfig, settings: EngineSettings):
        gateway = None
        if key_id and key_secret:
            gateway = PaymentGatewayClient(
                key_id,
                key_secret,
                retry=RetryConfig(
                    max_retries=settings.gateway_max_retries,
                    base_delay=settings.gateway_retry_base_delay,
                    max_delay=settings.gateway_retry_max_delay,
                ),
            )
        try:
            return await PaymentRetryJob(factory, config, gateway=gateway).run()
        finally:
            if gateway is not None:
                await gateway.close()

    report = _run_job(_job)
    if _json_output:
        _emit_json(report)
    else:
        display_payment_retry_report(console, report)
    if report.errors:
        raise typer.Exit(code=1)
