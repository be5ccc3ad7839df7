"""
CLI interface for the tenant billing engine.

Operator commands over the core operations: schema setup, proration and tax
calculators, scheduling, shard runs, retry sweeps, renewal passes,
enforcement passes, notification flushing and audit listings.
"""

import logging
import sys
import sqlite3
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tenant_billing.config.loader import EngineConfig, load_engine_config
from tenant_billing.core.engine import BillingEngine, build_engine
from tenant_billing.core.errors import BillingError
from tenant_billing.core.policy import RenewalMode
from tenant_billing.core.proration import prorate
from tenant_billing.core.scheduler import monthly_period
from tenant_billing.core.sharding import ShardPlan
from tenant_billing.core.tax import StaticTaxRuleSource, calculate_tax
from tenant_billing.storage.db import DEFAULT_DB_PATH
from tenant_billing.storage.models import CycleFilter, CycleStatus, InvoiceFilter, InvoiceStatus
from tenant_billing.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to the YAML engine configuration")


def configure_logging(level: str = "WARNING") -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load_config(path: Optional[str]) -> EngineConfig:
    return load_engine_config(path) if path else EngineConfig()


def _engine(db: str, config_path: Optional[str]) -> BillingEngine:
    return build_engine(get_repository(db), _load_config(config_path))


def _parse_date(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"{name} must be YYYY-MM-DD, got {value!r}")


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"Not a decimal amount: {value!r}")
    if not amount.is_finite():
        raise typer.BadParameter(f"Not a decimal amount: {value!r}")
    return amount


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level")
):
    """Tenant billing engine CLI."""
    configure_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("Tenant billing - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the billing database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("prorate")
def prorate_command(
    amount: str = typer.Argument(..., help="Plan base amount"),
    cycle_start: str = typer.Argument(..., help="First day of the cycle"),
    cycle_end: str = typer.Argument(..., help="Last day of the cycle"),
    usage_start: Optional[str] = typer.Option(None, "--usage-start", help="First day of usage"),
    usage_end: Optional[str] = typer.Option(None, "--usage-end", help="Last day of usage"),
):
    """Prorate a base amount over the days of the cycle actually used."""
    try:
        result = prorate(
            _parse_amount(amount),
            _parse_date(cycle_start, "cycle_start"),
            _parse_date(cycle_end, "cycle_end"),
            _parse_date(usage_start, "usage_start") if usage_start else None,
            _parse_date(usage_end, "usage_end") if usage_end else None,
        )
    except BillingError as e:
        _fail(f"{e.reason.value}: {e}")
    console.print(f"Prorated amount: [bold]{result}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("tax")
def tax_command(
    country: str = typer.Argument(..., help="Country code"),
    plan_type: str = typer.Argument(..., help="Plan type"),
    amount: str = typer.Argument(..., help="Taxable amount"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Show the tax lines applied to an amount."""
    try:
        engine_config = _load_config(config)
        result = calculate_tax(StaticTaxRuleSource(engine_config.tax_rules), country, plan_type, _parse_amount(amount))
    except (ValueError, FileNotFoundError, BillingError) as e:
        _fail(str(e))

    table = Table(title=f"Tax for {result.jurisdiction_key}")
    table.add_column("Rule")
    table.add_column("Rate", justify="right")
    table.add_column("Amount", justify="right")
    for line in result.lines:
        table.add_row(line.rule.name, str(line.rule.rate), str(line.amount))
    console.print(table)
    console.print(f"Total tax: [bold]{result.total}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def schedule(
    month: str = typer.Option(..., "--month", "-m", help="Any date in the month to bill (YYYY-MM-DD)"),
    tenants: Optional[List[str]] = typer.Option(None, "--tenant", "-t", help="Tenant ids (default: all active)"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Create scheduled billing cycles for a calendar month."""
    try:
        engine = _engine(db, config)
        period_start, period_end = monthly_period(_parse_date(month, "month"))
        tenant_ids = tenants or engine.repository.list_tenant_ids()
        cycles = engine.scheduler.schedule_cycles(tenant_ids, period_start, period_end)
    except (ValueError, FileNotFoundError, BillingError, sqlite3.Error) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {len(cycles)} cycle(s) for {period_start}..{period_end}")
    sys.exit(EXIT_CODE_PASS)


@app.command("run-shard")
def run_shard(
    shard_id: int = typer.Option(0, "--shard", help="Shard to process"),
    shards: int = typer.Option(1, "--shards", help="Total number of shards"),
    run_id: str = typer.Option(..., "--run-id", help="Batch run id used for progress tracking"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Bill the scheduled cycles of one tenant shard."""
    try:
        engine = _engine(db, config)
        plan = ShardPlan(engine.repository.list_tenant_ids(), shards, run_id=run_id, repository=engine.repository)
        report = engine.scheduler.run_shard(plan, shard_id)
    except (ValueError, FileNotFoundError, sqlite3.Error) as e:
        _fail(str(e))

    console.print(f"\n[bold]Shard {shard_id}/{shards}[/bold] run {run_id}")
    console.print(f"Completed: {len(report.completed)}  Failed: {len(report.failed)}  "
                  f"Skipped: {len(report.skipped)}  Errored: {len(report.errored)}")
    for tenant_id, error in report.errored.items():
        console.print(f"[red]✗[/] {tenant_id}: {error}")
    sys.exit(EXIT_CODE_FAIL if report.errored else EXIT_CODE_PASS)


@app.command("shard-preview")
def shard_preview(
    shards: int = typer.Option(1, "--shards", help="Total number of shards"),
    db: str = DB_OPTION,
):
    """Show how tenants are dealt across shards."""
    try:
        plan = ShardPlan(get_repository(db).list_tenant_ids(), shards)
    except (ValueError, sqlite3.Error) as e:
        _fail(str(e))
    table = Table(title=f"{shards} shard(s)")
    table.add_column("Shard", justify="right")
    table.add_column("Tenants")
    for shard, tenant_ids in plan.as_dict().items():
        table.add_row(str(shard), ", ".join(tenant_ids) or "-")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def retry(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Limit the sweep to one tenant"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Run one retry sweep over failed billing cycles."""
    try:
        report = _engine(db, config).retry.sweep(tenant_id=tenant)
    except (ValueError, FileNotFoundError, sqlite3.Error) as e:
        _fail(str(e))
    console.print(f"Retried: {len(report.retried)}  Completed: {len(report.completed)}  "
                  f"Still failing: {len(report.failed)}  Exhausted: {len(report.exhausted)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def renew(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Limit the pass to one tenant"),
    mode: str = typer.Option("automatic", "--mode", help="Renewal mode: automatic, manual or mixed"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Re-evaluate renewals of completed cycles that are undecided or pending."""
    try:
        renewal_mode = RenewalMode(mode.lower())
    except ValueError:
        _fail(f"Unknown renewal mode: {mode}")
    try:
        report = _engine(db, config).renewal.sweep(renewal_mode, tenant_id=tenant)
    except (ValueError, FileNotFoundError, sqlite3.Error) as e:
        _fail(str(e))
    console.print(f"Renewed: {len(report.renewed)}  Pending: {len(report.pending)}  Failed: {len(report.failed)}")
    for cycle_id, reason in report.pending.items():
        console.print(f"[yellow]![/] {cycle_id}: {reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def enforce(
    today: Optional[str] = typer.Option(None, "--today", help="Evaluation date (default: today)"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Run a non-payment enforcement pass over completed and failed cycles."""
    try:
        engine = _engine(db, config)
        evaluation_date = _parse_date(today, "today") if today else None
        cycles = engine.repository.list_cycles(statuses=(CycleStatus.COMPLETED, CycleStatus.FAILED,
                                                         CycleStatus.FAILED_EXHAUSTED))
        table = Table(title="Enforcement")
        table.add_column("Tenant")
        table.add_column("Cycle")
        table.add_column("Outcome")
        for cycle in cycles:
            outcome = engine.enforcement.evaluate(cycle.tenant_id, cycle.id, evaluation_date)
            table.add_row(cycle.tenant_id, cycle.id, outcome.value)
    except (ValueError, FileNotFoundError, sqlite3.Error) as e:
        _fail(str(e))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("flush-notifications")
def flush_notifications(
    limit: int = typer.Option(100, "--limit", help="Maximum notifications to retry"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Retry pending notifications from the outbox."""
    try:
        counts = _engine(db, config).notifier.flush_pending(limit)
    except (ValueError, FileNotFoundError, sqlite3.Error) as e:
        _fail(str(e))
    console.print(f"Sent: {counts['sent']}  Pending: {counts['pending']}  Dead: {counts['dead']}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cycles(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    status: Optional[List[str]] = typer.Option(None, "--status", "-s", help="Filter by status"),
    page: int = typer.Option(1, "--page", help="Page number"),
    page_size: int = typer.Option(20, "--page-size", help="Rows per page"),
    sort_by: str = typer.Option("period_start", "--sort", help="Sort column"),
    ascending: bool = typer.Option(False, "--asc", help="Sort ascending"),
    db: str = DB_OPTION,
):
    """List billing cycles for audit."""
    try:
        statuses = tuple(CycleStatus(s.upper()) for s in (status or []))
        result = get_repository(db).query_cycles(
            CycleFilter(tenant_id=tenant, statuses=statuses), page, page_size, sort_by, not ascending
        )
    except (ValueError, sqlite3.Error) as e:
        _fail(str(e))

    table = Table(title=f"Billing cycles (page {result.page}/{max(result.pages, 1)}, {result.total} total)")
    for column in ("Cycle", "Tenant", "Period", "Status", "Retries", "Last error"):
        table.add_column(column)
    for cycle in result.items:
        table.add_row(
            cycle.id, cycle.tenant_id, f"{cycle.period_start}..{cycle.period_end}",
            cycle.status.value, str(cycle.retry_count), cycle.last_error or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def invoices(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    status: Optional[List[str]] = typer.Option(None, "--status", "-s", help="Filter by status"),
    min_total: Optional[str] = typer.Option(None, "--min-total", help="Minimum invoice total"),
    page: int = typer.Option(1, "--page", help="Page number"),
    page_size: int = typer.Option(20, "--page-size", help="Rows per page"),
    sort_by: str = typer.Option("issued_at", "--sort", help="Sort column"),
    ascending: bool = typer.Option(False, "--asc", help="Sort ascending"),
    db: str = DB_OPTION,
):
    """List invoices for audit."""
    try:
        filters = InvoiceFilter(
            tenant_id=tenant,
            statuses=tuple(InvoiceStatus(s.upper()) for s in (status or [])),
            min_total=_parse_amount(min_total) if min_total else None,
        )
        result = get_repository(db).query_invoices(filters, page, page_size, sort_by, not ascending)
    except (ValueError, sqlite3.Error) as e:
        _fail(str(e))

    table = Table(title=f"Invoices (page {result.page}/{max(result.pages, 1)}, {result.total} total)")
    for column in ("Invoice", "Tenant", "Issued", "Due", "Total", "Status"):
        table.add_column(column)
    for invoice in result.items:
        table.add_row(
            invoice.id, invoice.tenant_id,
            invoice.issued_at.strftime("%Y-%m-%d"), invoice.due_at.strftime("%Y-%m-%d"),
            f"{invoice.total_amount} {invoice.currency}", invoice.status.value,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
