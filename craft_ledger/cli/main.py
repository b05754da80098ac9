"""
CLI interface for Craft Ledger.

Provides command-line access to accounts, the ledger, cost estimates and
the metering jobs.
"""

import sys
import uuid
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from craft_ledger.config.loader import Settings, load_settings
from craft_ledger.core.calculator import calculate_cost, format_cost_breakdown
from craft_ledger.core.collaborators import LoggingNotifier, LoggingPauser
from craft_ledger.core.exceptions import CraftLedgerError, UserNotFound
from craft_ledger.core.expiration import ExpirationSweep
from craft_ledger.core.guardrails import require_balance
from craft_ledger.core.ledger import Ledger
from craft_ledger.core.metering import JobReport, MeteringOrchestrator
from craft_ledger.core.topups import record_topup
from craft_ledger.core.usage import CacheDuration, CostModifiers, UsageReport
from craft_ledger.demo.seed_demo_data import seed_demo_data
from craft_ledger.storage.db import utcnow
from craft_ledger.storage.models import ResourceKind
from craft_ledger.storage.repository import (
    AccountRepository,
    ResourceRepository,
    UsageRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


def _ledger(settings: Settings) -> Ledger:
    return Ledger(settings.db_path, retry=settings.config.retry)


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value}")
    return amount


def _format_currency(amount: Decimal) -> str:
    """Format currency with sign and cents."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None, "--db", help="Path to the SQLite database (overrides CRAFT_LEDGER_DB)"
    ),
):
    """Craft Ledger CLI."""
    try:
        settings = load_settings()
    except CraftLedgerError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        settings = replace(settings, db_path=db)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        console.print("Craft Ledger - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Craft Ledger database."""
    try:
        initialize_schema(_settings(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("create-user")
def create_user(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Account email"),
    plan: str = typer.Option("FREE", "--plan", "-p", help="Plan name"),
):
    """Create an account with a zero balance."""
    try:
        user = AccountRepository(_settings(ctx).db_path).create_user(email, plan=plan)
        console.print(f"[green]✓[/] Created user {user.id} ({user.email}, {user.plan})")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def topup(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account to credit"),
    amount: str = typer.Argument(..., help="Amount in USD"),
    checkout_id: Optional[str] = typer.Option(
        None, "--checkout-id", "-c", help="Payment checkout id (idempotency key)"
    ),
    fee: str = typer.Option("0", "--fee", help="Platform fee charged on top"),
):
    """Record a balance top-up."""
    settings = _settings(ctx)
    try:
        result = record_topup(
            _ledger(settings),
            AccountRepository(settings.db_path),
            user_id,
            _parse_amount(amount),
            checkout_id=checkout_id or f"cli-{uuid.uuid4().hex}",
            platform_fee=_parse_amount(fee),
            warning_threshold=settings.config.thresholds.warning,
        )
        if result.duplicate:
            console.print("[yellow]Top-up already recorded[/]")
        console.print(f"Balance: {_format_currency(result.balance_after)}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(ctx: typer.Context, user_id: str = typer.Argument(..., help="Account id")):
    """Show an account's balance."""
    try:
        user = AccountRepository(_settings(ctx).db_path).get_user(user_id)
        if user is None:
            console.print(f"[red]Error:[/] User {user_id} not found")
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"[bold]{user.email}[/bold] ({user.plan})")
        console.print(f"Balance: {_format_currency(user.account_balance)}")
        if user.low_balance_warned_at:
            console.print(
                f"[yellow]Low balance warning sent {user.low_balance_warned_at.isoformat()}[/]"
            )
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def history(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of transactions"),
):
    """List recent balance transactions."""
    try:
        transactions = _ledger(_settings(ctx)).get_transactions(user_id, limit=limit)
        if not transactions:
            console.print("[dim]No transactions found.[/]")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Balance Transactions")
        table.add_column("Date")
        table.add_column("Type")
        table.add_column("Amount", justify="right")
        table.add_column("Balance", justify="right")
        table.add_column("Description")
        for tx in transactions:
            table.add_row(
                tx.created_at.strftime("%Y-%m-%d %H:%M"),
                tx.type.value + (" (expired)" if tx.expired else ""),
                f"{tx.amount:.6f}",
                _format_currency(tx.balance_after),
                tx.description,
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def reconcile(ctx: typer.Context, user_id: str = typer.Argument(..., help="Account id")):
    """Check that the stored balance equals the sum of transactions."""
    try:
        result = _ledger(_settings(ctx)).reconcile(user_id)
        console.print(f"Stored balance:   {result.stored_balance}")
        console.print(f"Transaction sum:  {result.computed_balance}")
        if result.is_consistent:
            console.print(f"[green]✓[/] Consistent ({result.transaction_count} transactions)")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]✗[/] Difference: {result.difference}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def cost(
    model: str = typer.Argument(..., help="Model id, e.g. anthropic/claude-sonnet-4.5"),
    input_tokens: int = typer.Option(0, "--input", "-i", help="Total input tokens"),
    output_tokens: int = typer.Option(0, "--output", "-o", help="Output tokens"),
    cached_tokens: int = typer.Option(0, "--cached", help="Cached input tokens"),
    reasoning_tokens: int = typer.Option(0, "--reasoning", help="Reasoning tokens"),
    batch: bool = typer.Option(False, "--batch", help="Batch API pricing"),
    long_context: bool = typer.Option(False, "--long-context", help="Long-context pricing"),
    one_hour_cache: bool = typer.Option(False, "--one-hour-cache", help="1-hour cache writes"),
):
    """Calculate the cost of an AI call."""
    try:
        usage = UsageReport(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_tokens=cached_tokens,
            reasoning_tokens=reasoning_tokens,
        )
        modifiers = CostModifiers(
            is_batch_mode=batch,
            is_long_context=long_context,
            cache_duration=CacheDuration.ONE_HOUR if one_hour_cache else CacheDuration.FIVE_MINUTES,
        )
        breakdown = calculate_cost(model, usage, modifiers)
        console.print(f"\n[bold]{breakdown.model_id}[/bold]")
        console.print(format_cost_breakdown(breakdown))
        if breakdown.applied_discounts:
            console.print(f"Modifiers: {', '.join(breakdown.applied_discounts)}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-resource")
def add_resource(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Owner account id"),
    kind: str = typer.Argument(..., help="sandbox, database or deployment"),
    name: str = typer.Argument(..., help="Display name"),
    database_gb: Optional[str] = typer.Option(None, "--database-gb", help="Measured database size"),
    file_gb: Optional[str] = typer.Option(None, "--file-gb", help="Measured file storage size"),
):
    """Register a billable resource."""
    try:
        resource = ResourceRepository(_settings(ctx).db_path).add_resource(
            user_id,
            ResourceKind(kind.lower()),
            name,
            database_storage_gb=_parse_amount(database_gb) if database_gb else None,
            file_storage_gb=_parse_amount(file_gb) if file_gb else None,
        )
        console.print(f"[green]✓[/] Added {resource.kind.value} {resource.id}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def resume(
    ctx: typer.Context,
    resource_id: str = typer.Argument(..., help="Paused resource id"),
):
    """Reactivate a paused resource once its owner's balance allows it."""
    settings = _settings(ctx)
    try:
        resources = ResourceRepository(settings.db_path)
        resource = resources.get_resource(resource_id)
        if resource is None:
            raise ValueError(f"Resource {resource_id} not found")
        user = AccountRepository(settings.db_path).get_user(resource.user_id)
        if user is None:
            raise UserNotFound(resource.user_id)
        require_balance(user.account_balance, Decimal("0"), settings.config.thresholds)

        if not resources.resume(resource_id, utcnow()):
            console.print(f"[yellow]![/] {resource_id} is not paused")
        else:
            console.print(f"[green]✓[/] Resumed {resource.kind.value} {resource_id}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def bill(
    ctx: typer.Context,
    daily: bool = typer.Option(False, "--daily", help="Run the daily storage/runtime job"),
    resume_after: Optional[str] = typer.Option(
        None, "--resume-after", help="Continue after this resource id"
    ),
):
    """Run the infrastructure billing job once."""
    settings = _settings(ctx)
    try:
        orchestrator = MeteringOrchestrator(
            _ledger(settings),
            AccountRepository(settings.db_path),
            ResourceRepository(settings.db_path),
            LoggingNotifier(),
            LoggingPauser(),
            settings.config,
        )
        if daily:
            report = orchestrator.run_daily(resume_after=resume_after)
        else:
            report = orchestrator.run_hourly(resume_after=resume_after)
        _display_report(report)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def expire(
    ctx: typer.Context,
    notify_upcoming: bool = typer.Option(
        False, "--notify-upcoming", help="Also email users about upcoming expirations"
    ),
):
    """Run the top-up expiration sweep once."""
    settings = _settings(ctx)
    try:
        sweep = ExpirationSweep(
            _ledger(settings),
            AccountRepository(settings.db_path),
            LoggingNotifier(),
            settings.config,
        )
        _display_report(sweep.run())
        if notify_upcoming:
            _display_report(sweep.notify_expiring_soon())
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    ctx: typer.Context,
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter to one account"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Filter to one model"),
    days: int = typer.Option(30, "--days", "-d", help="Days to look back"),
):
    """Show AI usage statistics."""
    try:
        stats = UsageRepository(_settings(ctx).db_path).get_usage_stats(
            user_id=user_id, model_id=model, days=days
        )
        if stats["total_requests"] == 0:
            console.print("\n[bold yellow]No AI usage recorded[/]")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"\n[bold]AI usage (last {days} days)[/bold]")
        console.print("-" * 40)
        console.print(f"Requests: {stats['total_requests']}")
        console.print(f"Tokens: {stats['total_tokens']:,}")
        console.print(f"Total cost: ${stats['total_cost']:.4f}")
        console.print(f"Average cost/request: ${stats['avg_cost']:.4f}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Insert demo accounts, resources and usage."""
    try:
        user_ids = seed_demo_data(_settings(ctx).db_path)
        for email, user_id in user_ids.items():
            console.print(f"[green]✓[/] {email}: {user_id}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _display_report(report: JobReport) -> None:
    """Display a job report in a clean, financial format."""
    console.print(f"\n[bold]{report.job.replace('_', ' ').title()} run[/bold]")
    console.print("-" * 40)
    console.print(f"Processed: {report.processed_count}")
    if report.billed_count:
        console.print(f"Billed: {report.billed_count}")
    if report.paused_count:
        console.print(f"Paused: {report.paused_count}")
    if report.warning_count:
        console.print(f"Warnings sent: {report.warning_count}")
    console.print(f"Total: ${report.total_amount:.6f}")
    for error in report.errors:
        console.print(f"[red]✗[/] {error['resource_id']}: {error['error']}")
    if report.timed_out:
        console.print(
            f"[yellow]Run budget exhausted; {len(report.skipped)} skipped, "
            f"resume after {report.resume_after}[/]"
        )
    if report.daily is not None:
        _display_report(report.daily)


if __name__ == "__main__":
    app()
