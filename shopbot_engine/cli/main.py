"""
CLI interface for the shopbot engine.

Administrative access to budgets, rollover jobs and the usage ledger.
"""

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from shopbot_engine.config.loader import EngineConfig, load_engine_config
from shopbot_engine.core.budget import BudgetGovernor
from shopbot_engine.core.ledger import UsageLedger
from shopbot_engine.storage.models import OperationType
from shopbot_engine.storage.repository import BudgetRepository, LedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


@dataclass
class CliState:
    db_path: str
    config: EngineConfig


def _services(ctx: typer.Context):
    state: CliState = ctx.obj
    initialize_schema(state.db_path)
    governor = BudgetGovernor(
        BudgetRepository(state.db_path), state.config.budget, state.config.optimization
    )
    ledger = UsageLedger(LedgerRepository(state.db_path), governor, state.config.token_limits)
    return governor, ledger


def _format_currency(amount: float) -> str:
    return f"${amount:,.4f}"


def _parse_date(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Error:[/] {option} must be an ISO date, got '{value}'")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Engine YAML configuration file"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Shopbot engine CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_engine_config(config_path) if config_path else EngineConfig.default()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = CliState(db_path=db or config.storage.db_path, config=config)
    if ctx.invoked_subcommand is None:
        console.print("Shopbot Engine - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the engine database."""
    try:
        initialize_schema(ctx.obj.db_path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context, shop_id: str = typer.Argument(..., help="Shop to inspect")):
    """Show a shop's budget, spend and remaining headroom."""
    governor, _ = _services(ctx)
    budget = governor.get_budget(shop_id)
    st = governor.status(shop_id)

    table = Table(title=f"Budget for {shop_id}")
    table.add_column("Period")
    table.add_column("Spent", justify="right")
    table.add_column("Budget", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_row(
        "Daily", _format_currency(budget.daily_spent), _format_currency(budget.daily_budget),
        f"{st.daily_percent_used:.1f}%", _format_currency(st.daily_remaining),
    )
    table.add_row(
        "Monthly", _format_currency(budget.monthly_spent), _format_currency(budget.monthly_budget),
        f"{st.monthly_percent_used:.1f}%", _format_currency(st.monthly_remaining),
    )
    console.print(table)

    state = "[red]EXCEEDED[/]" if budget.is_budget_exceeded else "[green]OK[/]"
    console.print(f"Status: {state}")
    console.print(f"Can make request: {'yes' if st.can_make_request else 'no'}")
    console.print(f"Estimated requests remaining: {st.estimated_requests_remaining:,}")
    console.print(f"Alert threshold: {budget.alert_threshold:.0f}%")
    console.print(
        f"Auto-optimization: {'on' if budget.auto_optimization_enabled else 'off'} "
        f"(fallback model {budget.fallback_model})"
    )
    if st.should_optimize:
        console.print("[yellow]Spend is past the alert threshold; cost optimization is active[/]")


@app.command("budgets")
def list_budgets(ctx: typer.Context):
    """List every shop budget, biggest monthly spenders first."""
    governor, _ = _services(ctx)
    budgets = governor.list_budgets()
    if not budgets:
        console.print("[dim]No shop budgets yet.[/]")
        return

    table = Table(title="Shop budgets")
    table.add_column("Shop")
    table.add_column("Daily", justify="right")
    table.add_column("Monthly", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Exceeded")
    for b in budgets:
        table.add_row(
            b.shop_id,
            f"{_format_currency(b.daily_spent)} / {_format_currency(b.daily_budget)}",
            f"{_format_currency(b.monthly_spent)} / {_format_currency(b.monthly_budget)}",
            f"{b.percent_used:.1f}%",
            "yes" if b.is_budget_exceeded else "no",
        )
    console.print(table)


@app.command("set-budget")
def set_budget(
    ctx: typer.Context,
    shop_id: str = typer.Argument(..., help="Shop to update"),
    daily: Optional[float] = typer.Option(None, "--daily", help="Daily budget in USD"),
    monthly: Optional[float] = typer.Option(None, "--monthly", help="Monthly budget in USD"),
    alert_threshold: Optional[float] = typer.Option(
        None, "--alert-threshold", help="Alert threshold in percent"
    ),
    auto_optimization: Optional[bool] = typer.Option(
        None, "--auto-optimization/--no-auto-optimization", help="Toggle cost optimization"
    ),
    fallback_model: Optional[str] = typer.Option(None, "--fallback-model", help="Cheaper model"),
):
    """Update a shop's budget limits and optimization settings."""
    changes = {}
    if daily is not None:
        changes["daily_budget"] = daily
    if monthly is not None:
        changes["monthly_budget"] = monthly
    if alert_threshold is not None:
        changes["alert_threshold"] = alert_threshold
    if auto_optimization is not None:
        changes["auto_optimization_enabled"] = auto_optimization
    if fallback_model is not None:
        changes["fallback_model"] = fallback_model

    if not changes:
        console.print("[red]Error:[/] nothing to update")
        sys.exit(EXIT_CODE_FAIL)
    for name in ("daily_budget", "monthly_budget"):
        if name in changes and changes[name] <= 0:
            console.print(f"[red]Error:[/] {name.replace('_', ' ')} must be > 0")
            sys.exit(EXIT_CODE_FAIL)
    if "alert_threshold" in changes and not 0 < changes["alert_threshold"] <= 100:
        console.print("[red]Error:[/] alert threshold must be in (0, 100]")
        sys.exit(EXIT_CODE_FAIL)

    governor, _ = _services(ctx)
    budget = governor.update_budget(shop_id, **changes)
    console.print(
        f"[green]✓[/] Budget for {shop_id}: daily {_format_currency(budget.daily_budget)}, "
        f"monthly {_format_currency(budget.monthly_budget)}"
    )


@app.command()
def rollover(
    ctx: typer.Context,
    daily: bool = typer.Option(False, "--daily", help="Reset daily spend"),
    monthly: bool = typer.Option(False, "--monthly", help="Reset monthly spend"),
):
    """Run the scheduled budget rollover."""
    if not daily and not monthly:
        console.print("[red]Error:[/] pass --daily and/or --monthly")
        sys.exit(EXIT_CODE_FAIL)

    governor, _ = _services(ctx)
    if daily:
        count = governor.rollover_daily()
        console.print(f"[green]✓[/] Daily rollover reset {count} shop(s)")
    if monthly:
        count = governor.rollover_monthly()
        console.print(f"[green]✓[/] Monthly rollover reset {count} shop(s)")


@app.command()
def reconcile(ctx: typer.Context, shop_id: str = typer.Argument(..., help="Shop to reconcile")):
    """Recompute a shop's spend counters from the ledger."""
    _, ledger = _services(ctx)
    budget = ledger.reconcile(shop_id)
    console.print(
        f"[green]✓[/] {shop_id}: daily {_format_currency(budget.daily_spent)}, "
        f"monthly {_format_currency(budget.monthly_spent)}"
    )


@app.command()
def stats(
    ctx: typer.Context,
    shop_id: Optional[str] = typer.Option(None, "--shop", "-s", help="Filter to one shop"),
    operation: Optional[str] = typer.Option(None, "--operation", "-o", help="Operation type"),
    days: int = typer.Option(30, "--days", "-d", help="Days to include"),
):
    """Show usage statistics from the ledger."""
    operation_type = None
    if operation is not None:
        try:
            operation_type = OperationType(operation)
        except ValueError:
            valid = ", ".join(o.value for o in OperationType)
            console.print(f"[red]Error:[/] unknown operation '{operation}' (valid: {valid})")
            sys.exit(EXIT_CODE_FAIL)

    _, ledger = _services(ctx)
    result = ledger.repository.get_usage_stats(shop_id, operation_type, days)

    table = Table(title=f"Usage over the last {days} days")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests", f"{result['total_requests']:,}")
    table.add_row("Input tokens", f"{result['input_tokens']:,}")
    table.add_row("Output tokens", f"{result['output_tokens']:,}")
    table.add_row("Total tokens", f"{result['total_tokens']:,}")
    table.add_row("Total cost", _format_currency(result["total_cost"]))
    table.add_row("Average cost", f"${result['avg_cost']:.6f}")
    console.print(table)


@app.command()
def export(
    ctx: typer.Context,
    shop_id: Optional[str] = typer.Option(None, "--shop", "-s", help="Filter to one shop"),
    start: Optional[str] = typer.Option(None, "--start", help="ISO start date"),
    end: Optional[str] = typer.Option(None, "--end", help="ISO end date"),
    fmt: str = typer.Option("csv", "--format", "-f", help="csv or json"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file"),
):
    """Export ledger entries as CSV or JSON."""
    if fmt not in ("csv", "json"):
        console.print(f"[red]Error:[/] unknown format '{fmt}' (use csv or json)")
        sys.exit(EXIT_CODE_FAIL)

    _, ledger = _services(ctx)
    rows = ledger.export_rows(shop_id, _parse_date(start, "--start"), _parse_date(end, "--end"))
    text = ledger.export_csv(rows) if fmt == "csv" else json.dumps(rows, indent=2)

    if output is None:
        typer.echo(text, nl=False)
        return
    output.write_text(text, encoding="utf-8")
    console.print(f"[green]✓[/] Exported {len(rows)} entries to {output}")


@app.command("clear-ledger")
def clear_ledger(
    ctx: typer.Context,
    shop_id: Optional[str] = typer.Option(None, "--shop", "-s", help="Only clear this shop"),
    yes: bool = typer.Option(False, "--yes", help="Confirm the deletion"),
):
    """Delete ledger entries. Spend counters are left as they are."""
    if not yes:
        console.print("[red]Refusing to clear the ledger without --yes[/]")
        sys.exit(EXIT_CODE_FAIL)

    _, ledger = _services(ctx)
    deleted = ledger.clear(shop_id)
    console.print(f"[green]✓[/] Deleted {deleted} ledger entries")


if __name__ == "__main__":
    app()
