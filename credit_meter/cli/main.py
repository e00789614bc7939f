"""
CLI interface for Credit Meter.

Operator access to pricing, balances and the credit ledger.
"""

import logging
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from credit_meter.billing.hooks import adjust_balance
from credit_meter.config.loader import AppConfig, load_config
from credit_meter.core.credits import get_auto_reload_decision
from credit_meter.core.currency import format_microcents, parse_usd_to_microcents
from credit_meter.core.errors import CreditMeterError
from credit_meter.core.pricing import price_gateway_cost
from credit_meter.storage.db import Database
from credit_meter.storage.repository import CreditRepository

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


class _State:
    config: Optional[AppConfig] = None


state = _State()


def configure_logging(level: str = "INFO") -> None:
    """Send log records through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=False)],
        force=True
    )


def _config() -> AppConfig:
    if state.config is None:
        state.config = load_config()
    return state.config


def _repository() -> CreditRepository:
    config = _config()
    database = Database(config.database.path, config.database.busy_timeout_ms)
    database.initialize_schema()
    return CreditRepository(database)


def _usd(microcents: Optional[int], places: int = 2) -> str:
    if microcents is None:
        return "-"
    sign = "-" if microcents < 0 else ""
    return f"{sign}${format_microcents(abs(microcents), places=places)}"


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {escape(str(error))}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Override the configured log level"
    )
):
    """Credit Meter CLI."""
    try:
        state.config = load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(e)
    configure_logging((log_level or state.config.log_level).upper())
    if ctx.invoked_subcommand is None:
        console.print("Credit Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the credit ledger database."""
    try:
        _repository()
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def price(
    cost: str = typer.Argument(..., help="Gateway-reported USD cost, e.g. 0.0034"),
    markup_bps: Optional[int] = typer.Option(None, "--markup-bps", help="Override markup in basis points"),
    min_charge: Optional[int] = typer.Option(None, "--min-charge", help="Override minimum charge in cents")
):
    """Show the billed breakdown for a gateway cost."""
    policy = _config().pricing
    try:
        breakdown = price_gateway_cost(
            cost,
            markup_bps=policy.markup_bps if markup_bps is None else markup_bps,
            cents_rounding=policy.cents_rounding,
            markup_rounding=policy.markup_rounding,
            min_charge_cents=policy.min_charge_cents if min_charge is None else min_charge
        )
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    table = Table(title=f"Pricing for ${cost} at {breakdown.markup_bps} bps")
    table.add_column("Part")
    table.add_column("Microcents", justify="right")
    table.add_column("Cents", justify="right")
    table.add_row("Base", str(breakdown.base_microcents), str(breakdown.base_cents))
    table.add_row("Markup", str(breakdown.markup_microcents), str(breakdown.markup_cents))
    table.add_row("Total", str(breakdown.total_microcents), str(breakdown.total_cents))
    console.print(table)


@app.command()
def balance(user_id: str = typer.Argument(..., help="Account owner")):
    """Show a user's balance and auto-reload settings."""
    try:
        account = _repository().ensure_credit_account(user_id)
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    console.print(f"[bold]User:[/bold] {account.user_id}")
    console.print(f"Balance: {_usd(account.balance_microcents)} ({account.balance_microcents} microcents)")
    if account.auto_reload_enabled:
        decision = get_auto_reload_decision(account)
        console.print(
            f"Auto-reload: add {_usd(account.auto_reload_amount_microcents)} "
            f"at or below {_usd(account.auto_reload_threshold_microcents)} ({decision.reason.value})"
        )
    else:
        console.print("Auto-reload: disabled")


@app.command()
def adjust(
    user_id: str = typer.Argument(..., help="Account owner"),
    amount: str = typer.Argument(..., help="USD amount, prefix with '-' to deduct"),
    reason: str = typer.Option(..., "--reason", "-r", help="Reason recorded on the ledger"),
    note: Optional[str] = typer.Option(None, "--note", help="Optional note"),
    admin: str = typer.Option("cli", "--admin", help="Administrator making the change")
):
    """Adjust a user's balance by a USD amount."""
    try:
        text = amount.strip()
        negative = text.startswith("-")
        microcents = parse_usd_to_microcents(text.lstrip("-"))
        new_balance = adjust_balance(
            _repository(),
            admin,
            {
                "userId": user_id,
                "amountMicrocents": -microcents if negative else microcents,
                "reason": reason,
                "note": note,
            }
        )
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓[/] New balance for {user_id}: {_usd(new_balance)}")


@app.command()
def ledger(
    user_id: str = typer.Argument(..., help="Account owner"),
    limit: int = typer.Option(20, "--limit", "-n", help="Entries to show (1-100)"),
    offset: int = typer.Option(0, "--offset", help="Entries to skip")
):
    """List a user's ledger entries, newest first."""
    try:
        entries = _repository().list_credit_ledger(user_id, limit=limit, offset=offset)
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    if not entries:
        console.print(f"\n[dim]No ledger entries for {user_id}.[/]")
        return

    table = Table(title=f"Ledger for {user_id}")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance after", justify="right")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.entry_type,
            _usd(entry.amount_microcents, places=8),
            _usd(entry.balance_after_microcents),
            entry.reason
        )
    console.print(table)


@app.command()
def settings(
    user_id: str = typer.Argument(..., help="Account owner"),
    enable: Optional[bool] = typer.Option(None, "--enable/--disable", help="Turn auto-reload on or off"),
    threshold: Optional[str] = typer.Option(None, "--threshold", help="Reload at or below this USD balance"),
    amount: Optional[str] = typer.Option(None, "--amount", help="USD amount to add on reload")
):
    """Update a user's auto-reload settings."""
    updates = {}
    try:
        if enable is not None:
            updates["auto_reload_enabled"] = enable
        if threshold is not None:
            updates["auto_reload_threshold_microcents"] = parse_usd_to_microcents(threshold)
        if amount is not None:
            updates["auto_reload_amount_microcents"] = parse_usd_to_microcents(amount)
        account = _repository().update_credit_account_settings(user_id, updates)
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    state_text = "enabled" if account.auto_reload_enabled else "disabled"
    console.print(f"[green]✓[/] Auto-reload {state_text} for {user_id}")


@app.command()
def summary(
    user_id: str = typer.Argument(..., help="Account owner"),
    window_days: int = typer.Option(30, "--days", "-d", help="Window in days (max 365)")
):
    """Show spending and credits over a trailing window."""
    try:
        result = _repository().summarize_credit_ledger(user_id, window_days)
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    console.print(f"\n[bold]Last {result.window_days} days for {user_id}[/bold]")
    console.print(f"Spent: {_usd(result.total_spent_microcents)}")
    console.print(f"Credited: {_usd(result.total_credits_microcents)}")


@app.command()
def reconcile(user_id: str = typer.Argument(..., help="Account owner")):
    """Check that the stored balance matches the ledger."""
    try:
        result = _repository().reconcile(user_id)
    except (CreditMeterError, ValueError) as e:
        _fail(e)

    if result.consistent:
        console.print(
            f"[green]✓[/] {user_id}: balance matches {result.entry_count} ledger entries "
            f"({result.balance_microcents} microcents)"
        )
    else:
        console.print(
            f"[red]✗[/] {user_id}: balance {result.balance_microcents} != "
            f"ledger sum {result.ledger_sum_microcents}"
        )
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
