"""Rich output formatting for the billing CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from billing_engine.models.billing import RenewalReport
from billing_engine.models.lifecycle import AutoCancelReport
from billing_engine.payments.dunning import PaymentRetryReport
from billing_engine.payments.reconciliation import GapRecord
from billing_engine.payments.refunds import RefundRunReport


def format_amount(minor: int, currency: str = "INR") -> str:
    """Render integer minor units as a major-unit string, e.g. ``INR 100.00``."""
    sign = "-" if minor < 0 else ""
    major, cents = divmod(abs(minor), 100)
    return f"{sign}{currency} {major:,}.{cents:02d}"


# ---------------------------------------------------------------------------
# Renewals
# ---------------------------------------------------------------------------


def display_renewal_report(console: Console, report: RenewalReport, currency: str = "INR") -> None:
    """Render the invoices opened by a renewal run plus skip/error counts."""
    if report.invoices:
        table = Table(title=f"Renewals: {report.period.value} as of {report.run_date.isoformat()}")
        table.add_column("Invoice", style="dim", max_width=20)
        table.add_column("Group", max_width=20)
        table.add_column("Cycle Start")
        table.add_column("Credits", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Status")
        for inv in report.invoices:
            colour = "green" if inv.status == "paid" else "yellow"
            table.add_row(
                inv.invoice_id,
                inv.group_id,
                inv.cycle_start.isoformat(),
                format_amount(inv.credits_applied, currency),
                format_amount(inv.total_amount, currency),
                f"[{colour}]{inv.status}[/{colour}]",
            )
        console.print(table)
    else:
        console.print("[dim]No invoices created.[/dim]")

    console.print(
        f"Examined [bold]{report.examined}[/bold]: "
        f"[green]{report.count} invoiced[/green], "
        f"[dim]{len(report.skipped)} skipped[/dim], "
        f"[red]{len(report.errors)} errors[/red]"
    )
    for group_id, error in report.errors.items():
        console.print(f"  [red]{group_id}[/red]: {error}")
    if report.aborted:
        console.print("[yellow]Run was stopped before all groups were examined.[/yellow]")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def display_gaps(console: Console, gaps: list[GapRecord]) -> None:
    if not gaps:
        console.print("[green]No unresolved reconciliation gaps.[/green]")
        return

    table = Table(title="Unresolved Reconciliation Gaps")
    table.add_column("Gap", style="dim", max_width=20)
    table.add_column("Invoice", max_width=20)
    table.add_column("Kind")
    table.add_column("Attempts", justify="center")
    table.add_column("Created")
    table.add_column("Detail", overflow="fold")
    for gap in gaps:
        table.add_row(
            gap.gap_id,
            gap.invoice_id,
            gap.kind,
            str(gap.attempts),
            gap.created_at.strftime("%Y-%m-%d %H:%M"),
            gap.detail or "-",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------


def display_auto_cancel_report(console: Console, report: AutoCancelReport) -> None:
    console.print(
        f"Paused groups past the limit: [bold]{report.examined}[/bold], "
        f"cancelled: [green]{len(report.cancelled)}[/green], "
        f"errors: [red]{len(report.errors)}[/red]"
    )
    for group_id, error in report.errors.items():
        console.print(f"  [red]{group_id}[/red]: {error}")


def display_refund_report(console: Console, report: RefundRunReport) -> None:
    console.print(
        f"Pending refunds examined: [bold]{report.examined}[/bold], "
        f"processed: [green]{len(report.processed)}[/green], "
        f"failed: [red]{len(report.failed)}[/red], "
        f"retry later: [yellow]{len(report.retry_later)}[/yellow]"
    )
    for refund_id, reason in report.failed.items():
        console.print(f"  [red]{refund_id}[/red]: {reason}")
    for refund_id, reason in report.retry_later.items():
        console.print(f"  [yellow]{refund_id}[/yellow]: {reason}")


def display_payment_retry_report(console: Console, report: PaymentRetryReport) -> None:
    console.print(
        f"Unpaid renewals examined: [bold]{report.examined}[/bold], "
        f"retried: [green]{len(report.retried)}[/green], "
        f"groups paused: [yellow]{len(report.paused)}[/yellow], "
        f"errors: [red]{len(report.errors)}[/red]"
    )
    for invoice_id, reason in report.deferred.items():
        console.print(f"  [yellow]{invoice_id}[/yellow]: {reason}")
    for invoice_id, error in report.errors.items():
        console.print(f"  [red]{invoice_id}[/red]: {error}")
