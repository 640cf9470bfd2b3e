"""
CLI interface for Bot Credit Guard.

Operator access to accounts, credits, usage and webhooks, plus the HTTP
server.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from bot_credit_guard.config.loader import load_settings
from bot_credit_guard.config.logging_setup import configure_logging
from bot_credit_guard.core.errors import BotApiError
from bot_credit_guard.core.services import ServiceContainer
from bot_credit_guard.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"config": None}


def _services() -> ServiceContainer:
    settings = load_settings(_state["config"])
    configure_logging(settings.log_level)
    return ServiceContainer.build(settings)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {escape(message)}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file",
    ),
):
    """Bot Credit Guard CLI."""
    _state["config"] = config
    if ctx.invoked_subcommand is None:
        console.print("Bot Credit Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the database."""
    try:
        settings = load_settings(_state["config"])
        initialize_schema(settings.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except (OSError, ValueError) as e:
        _fail(f"initializing database: {e}")


@app.command("create-bot")
def create_bot(
    name: str = typer.Argument(..., help="Display name of the bot"),
    tier: str = typer.Option("free", "--tier", "-t", help="free, premium or enterprise"),
):
    """Register a bot and print its API key (shown only once)."""
    try:
        services = _services()
        credentials = services.accounts.create_account(name, tier)
        balance = services.ledger.get_balance(credentials.account.id)
    except BotApiError as e:
        _fail(e.message)

    console.print(f"[green]✓[/] Created bot [bold]{credentials.account.name}[/]")
    console.print(f"Bot ID:  {credentials.account.id}")
    console.print(f"Tier:    {credentials.account.tier.value}")
    console.print(f"Credits: {balance.credits_remaining} (daily limit {balance.daily_limit})")
    console.print(f"API key: [bold]{credentials.api_key}[/]")
    console.print("[yellow]Store this key now; it cannot be shown again.[/]")


@app.command("rotate-key")
def rotate_key(bot_id: str = typer.Argument(..., help="Bot ID")):
    """Issue a new API key; the old one stops working immediately."""
    try:
        credentials = _services().accounts.rotate_key(bot_id)
    except BotApiError as e:
        _fail(e.message)
    console.print(f"[green]✓[/] New API key: [bold]{credentials.api_key}[/]")


@app.command("set-tier")
def set_tier(
    bot_id: str = typer.Argument(..., help="Bot ID"),
    tier: str = typer.Argument(..., help="free, premium or enterprise"),
):
    """Change a bot's tier and daily limit."""
    try:
        services = _services()
        account = services.accounts.set_tier(bot_id, tier)
        balance = services.ledger.get_balance(bot_id)
    except BotApiError as e:
        _fail(e.message)
    console.print(f"[green]✓[/] {account.name} is now {account.tier.value} "
                  f"(daily limit {balance.daily_limit})")


@app.command()
def deactivate(bot_id: str = typer.Argument(..., help="Bot ID")):
    """Deactivate a bot. History is kept."""
    try:
        _services().accounts.deactivate(bot_id)
    except BotApiError as e:
        _fail(e.message)
    console.print(f"[green]✓[/] Bot {bot_id} deactivated")


@app.command()
def purchase(
    bot_id: str = typer.Argument(..., help="Bot ID"),
    amount: int = typer.Argument(..., help="Credits to add"),
):
    """Record a completed payment and credit the bot."""
    services = _services()
    try:
        with services:
            result = services.purchases.purchase(bot_id, amount)
    except BotApiError as e:
        _fail(e.message)
    console.print(f"[green]✓[/] Added {amount} credits (invoice {result.invoice.id})")
    console.print(f"Credits remaining: {result.balance.credits_remaining}")


@app.command()
def usage(
    bot_id: str = typer.Argument(..., help="Bot ID"),
    days: int = typer.Option(7, "--days", "-d", help="Number of days to show"),
):
    """Show a bot's balance and daily usage."""
    try:
        services = _services()
        account = services.accounts.require(bot_id)
        balance = services.ledger.get_balance(bot_id)
        history = services.usage.history(bot_id, days)
    except BotApiError as e:
        _fail(e.message)

    console.print(f"\n[bold]{account.name}[/bold] ({account.tier.value})")
    console.print("-" * 40)
    console.print(f"Credits remaining: {balance.credits_remaining:,}")
    console.print(f"Purchased / used:  {balance.total_purchased:,} / {balance.total_used:,}")
    console.print(f"Today:             {balance.usage_today:,} of {balance.daily_limit:,}")
    console.print(f"Resets at:         {balance.reset_date.isoformat()}")

    if not history:
        console.print("\n[dim]No usage recorded in this period.[/]")
        return

    table = Table(title=f"Last {days} days")
    table.add_column("Date")
    table.add_column("Requests", justify="right")
    table.add_column("Successes", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Credits", justify="right")
    for record in history:
        table.add_row(
            record.date.isoformat(),
            str(record.request_count),
            str(record.success_count),
            str(record.error_count),
            str(record.credits_used),
        )
    console.print(table)


@app.command()
def webhooks(bot_id: str = typer.Argument(..., help="Bot ID")):
    """List a bot's webhook subscriptions and their delivery health."""
    try:
        subscriptions = _services().webhooks.list(bot_id)
    except BotApiError as e:
        _fail(e.message)

    if not subscriptions:
        console.print("[dim]No webhooks registered.[/]")
        return

    table = Table(title="Webhooks")
    table.add_column("ID")
    table.add_column("URL")
    table.add_column("Event")
    table.add_column("Failures", justify="right")
    table.add_column("Last delivered")
    for subscription in subscriptions:
        table.add_row(
            subscription.id,
            subscription.url,
            subscription.event_type.value,
            str(subscription.failure_count),
            subscription.last_triggered_at.isoformat() if subscription.last_triggered_at else "-",
        )
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """Run the HTTP API."""
    import uvicorn

    from bot_credit_guard.api.app import create_app

    settings = load_settings(_state["config"])
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
