"""
CLI interface for Spend Gateway.

Provides command-line access to the ledger mirror, budget checks and
streamed generations.
"""

import asyncio
import sys
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from spend_gateway.config.loader import (
    TASK_TYPES,
    GatewayConfig,
    default_gateway_config,
    load_gateway_config,
)
from spend_gateway.core.errors import GatewayError
from spend_gateway.core.gateway import (
    GatewayOrchestrator,
    GenerationOptions,
    GenerationRequest,
    GenerationSummary,
)
from spend_gateway.core.guardrails import (
    BudgetAction,
    BudgetPolicy,
    BudgetScope,
    PeriodKind,
    ScopeKind,
    check_before_request,
)
from spend_gateway.core.logging import configure_logging
from spend_gateway.storage.db import DEFAULT_DB_PATH
from spend_gateway.storage.ledger import UsageLedger
from spend_gateway.storage.repository import (
    SqliteUsageMirror,
    UsageRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

# Exit codes - WARN is non-failing (0)
EXIT_CODE_PASS = 0
EXIT_CODE_WARN = 0  # Non-failing warning
EXIT_CODE_FAIL = 1  # Failing error

_ACTION_EXIT_CODES = {
    BudgetAction.ALLOW: EXIT_CODE_PASS,
    BudgetAction.WARN: EXIT_CODE_WARN,
    BudgetAction.DENY: EXIT_CODE_FAIL,
}


def _format_currency(amount: Decimal) -> str:
    """Format currency with enough precision for per-token costs."""
    return f"${amount:,.6f}"


def _load_config(path: Optional[str]) -> GatewayConfig:
    return load_gateway_config(path) if path else default_gateway_config()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Spend Gateway CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Spend Gateway - Use --help to see available commands")


@app.command()
def init(
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite mirror path"),
):
    """Initialize the usage mirror database."""
    try:
        initialize_schema(db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only include the last N days"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite mirror path"),
):
    """Show aggregate spend recorded in the usage mirror."""
    try:
        initialize_schema(db_path)
        result = UsageRepository(db_path).get_usage_stats(days=days)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if result["total_requests"] == 0:
        console.print("\n[bold yellow]No AI usage recorded yet[/]")
        console.print("Run a generation with `spend-gateway run` to start recording spend.\n")
        sys.exit(EXIT_CODE_PASS)

    console.print("\n[bold]AI Spend Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Requests: {result['total_requests']}")
    console.print(f"Total tokens: {result['total_tokens']:,}")
    console.print(f"Total cost: {_format_currency(result['total_cost'])}")
    console.print(f"Average cost/request: {_format_currency(result['avg_cost'])}")

    table = Table(title="Cost by provider")
    table.add_column("Provider")
    table.add_column("Cost", justify="right")
    for provider, cost in sorted(result["cost_by_provider"].items()):
        table.add_row(provider, _format_currency(cost))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("check-budget")
def check_budget(
    spend: float = typer.Option(..., "--spend", "-s", help="Spend already recorded"),
    limit: float = typer.Option(..., "--limit", "-l", help="Budget limit for the period"),
    threshold: float = typer.Option(0.8, "--threshold", "-t", help="Alert threshold (0-1)"),
    disabled: bool = typer.Option(False, "--disabled", help="Evaluate a disabled policy"),
):
    """Evaluate a budget policy against known spend."""
    try:
        scope = BudgetScope(ScopeKind.PROJECT, "cli")
        policy = BudgetPolicy(
            scope=scope,
            period_kind=PeriodKind.LIFETIME,
            limit_amount=limit,
            alert_threshold=threshold,
            enabled=not disabled,
        )
        decision = check_before_request(scope, policy, Decimal(str(spend)))
    except GatewayError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)

    color = {"ALLOW": "green", "WARN": "yellow", "DENY": "red"}[decision.action.name]
    console.print(f"[bold]Verdict:[/bold] [{color}]{decision.action.name}[/]")
    if decision.reason:
        console.print(decision.reason)
    if decision.remaining_fraction is not None and decision.action is BudgetAction.WARN:
        console.print(f"Remaining: {decision.remaining_fraction:.0%}")
    sys.exit(_ACTION_EXIT_CODES[decision.action])


@app.command("validate-config")
def validate_config(path: str = typer.Argument(..., help="Path to the YAML config")):
    """Validate a gateway configuration file."""
    try:
        config = load_gateway_config(path)
    except Exception as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Configuration is valid")
    for task_type, route in sorted(config.routing.items()):
        console.print(f"  {task_type}: {route.provider}/{route.model}")
    sys.exit(EXIT_CODE_PASS)


def _display_summary(summary: GenerationSummary) -> None:
    console.print("\n[bold]Generation Summary[/bold]")
    console.print("-" * 40)
    console.print(f"State: {summary.state.value}")
    console.print(f"Provider/model: {summary.provider}/{summary.model}")
    console.print(f"Tokens: {summary.tokens_in} in / {summary.tokens_out} out")
    console.print(f"Cost: {_format_currency(summary.cost)}")
    if summary.attempts > 1:
        console.print(f"Attempts: {summary.attempts}")


async def _stream_generation(gateway: GatewayOrchestrator, request: GenerationRequest) -> GenerationSummary:
    try:
        stream = gateway.open_stream(request)
        if stream.warning is not None:
            console.print(f"[yellow]Budget warning:[/] {stream.warning.reason}")
        async with stream:
            async for text in stream:
                console.print(text, end="", markup=False, highlight=False)
        return stream.summary
    finally:
        await gateway.aclose()


@app.command()
def run(
    task_type: str = typer.Argument(..., help=f"One of: {', '.join(TASK_TYPES)}"),
    prompt: str = typer.Argument(..., help="Prompt or brief to send"),
    project: str = typer.Option(..., "--project", "-p", help="Project the spend belongs to"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User the spend belongs to"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Override the routed provider"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the routed model"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file"),
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite mirror path"),
):
    """Stream a generation and record its usage."""
    try:
        config = _load_config(config_path)
    except Exception as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(config.logging.level, config.logging.json)

    # Seed budgets with persisted spend, then mirror new entries
    ledger = UsageLedger()
    mirror = SqliteUsageMirror(db_path)
    ledger.restore(UsageRepository(db_path).get_entries_since())
    ledger.subscribe(mirror)

    gateway = GatewayOrchestrator.from_config(config, ledger=ledger)
    request = GenerationRequest(
        project_id=project,
        task_type=task_type,
        prompt=prompt,
        user_id=user,
        options=GenerationOptions(provider=provider, model=model),
    )

    try:
        summary = asyncio.run(_stream_generation(gateway, request))
    except GatewayError as e:
        console.print(f"\n[red]{e.code}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)

    _display_summary(summary)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
