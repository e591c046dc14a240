"""
CLI interface for the AI request orchestrator.

Provides command-line access to submitting requests, inspecting providers
and reporting persisted usage.
"""

import sqlite3
import sys
from decimal import Decimal
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_orchestrator.config.loader import OrchestratorConfig, default_config, load_config
from ai_orchestrator.core.exceptions import OrchestratorError
from ai_orchestrator.core.guardrails import current_period
from ai_orchestrator.core.ledger import UsageSummary
from ai_orchestrator.core.logging import configure_logging
from ai_orchestrator.core.orchestrator import OrchestratedResponse, Orchestrator
from ai_orchestrator.storage.db import DEFAULT_DB_PATH
from ai_orchestrator.storage.repository import (
    UsageRepository,
    initialize_schema,
    persist_ledger_snapshot,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines on stderr"),
):
    """AI request orchestrator CLI."""
    configure_logging(log_level=log_level, json_output=json_logs)
    if ctx.invoked_subcommand is None:
        console.print("AI Orchestrator - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite usage database path"),
):
    """Initialize the usage database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except (sqlite3.Error, OSError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ask(
    task: str = typer.Argument(..., help="Task type, e.g. explanation or code-generation"),
    prompt: str = typer.Argument(..., help="Prompt text"),
    context: Optional[List[str]] = typer.Option(
        None,
        "--context",
        "-c",
        help="Context tag as key=value (repeatable)",
    ),
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Force a provider id for this request",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="YAML configuration file (defaults to offline-only)",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Deadline in seconds",
    ),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite usage database path"),
):
    """
    Submit one request and print the response.

    Usage from this run is appended to the usage database.
    """
    try:
        tags = _parse_context(context or [])
        config = _load(config_path)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        spent = _opening_spend(config, db)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading usage database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    orchestrator = Orchestrator.from_config(config, spent=spent)
    orchestrator.start()
    try:
        handle = orchestrator.submit(task, prompt, tags, provider, timeout)
        response = orchestrator.wait(handle)
    except OrchestratorError as e:
        console.print(f"[red]{type(e).__name__}:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        orchestrator.stop()
        _persist(orchestrator, db)

    _display_response(response)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def providers(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="YAML configuration file (defaults to offline-only)",
    ),
):
    """List configured providers and whether they can be routed to."""
    try:
        config = _load(config_path)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Providers")
    table.add_column("ID", style="bold")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Price / 1K tokens", justify="right")
    table.add_column("Capabilities")

    for settings in config.providers:
        if settings.is_usable():
            status = "[green]available[/]"
        elif settings.available:
            status = f"[yellow]missing {settings.api_key_env}[/]"
        else:
            status = "[dim]disabled[/]"
        capabilities = ", ".join(sorted(t.value for t in settings.capabilities))
        table.add_row(
            settings.id,
            settings.kind.value,
            status,
            _format_currency(settings.price_per_1k_tokens, places=4),
            capabilities,
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    period: Optional[str] = typer.Option(
        None,
        "--period",
        help="Billing period, e.g. 2026-10 (default: all)",
    ),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite usage database path"),
):
    """Report persisted usage per provider and per task type."""
    try:
        summary = UsageRepository(db).get_usage_summary(period)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("\nRun `ai-orchestrator init`, then `ai-orchestrator ask` to record usage.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not summary.per_provider:
        console.print("\n[bold yellow]No usage data found[/]")
        sys.exit(EXIT_CODE_PASS)

    _display_summary(summary)
    sys.exit(EXIT_CODE_PASS)


def _load(config_path: Optional[str]) -> OrchestratorConfig:
    if config_path is None:
        return default_config()
    return load_config(config_path)


def _parse_context(values: List[str]) -> Dict[str, str]:
    tags = {}
    for value in values:
        key, sep, tag = value.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Context must be key=value, got '{value}'")
        tags[key.strip()] = tag
    return tags


def _opening_spend(config: OrchestratorConfig, db: str) -> Decimal:
    """Spend already persisted for the configured billing period."""
    initialize_schema(db)
    period = config.budget.period or current_period()
    return UsageRepository(db).get_period_spend(period)


def _persist(orchestrator: Orchestrator, db: str) -> None:
    try:
        initialize_schema(db)
        persist_ledger_snapshot(orchestrator.ledger, 0, db)
    except sqlite3.Error as e:
        console.print(f"[yellow]Warning:[/] usage not persisted: {str(e)}")


def _format_currency(amount, places: int = 2) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${float(amount):,.{places}f}"


def _display_response(response: OrchestratedResponse) -> None:
    console.print(
        f"[bold]{response.provider_id}[/bold] "
        f"[dim]({response.outcome.value}, confidence {response.confidence_score:.2f}, "
        f"{response.attempts} attempt(s))[/dim]"
    )
    console.print("-" * 40)
    console.print(response.content, markup=False, highlight=False)


def _display_summary(summary: UsageSummary) -> None:
    title = f"Usage for {summary.period}" if summary.period else "Usage (all periods)"
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)

    for label, buckets in (("Provider", summary.per_provider), ("Task", summary.per_task)):
        table = Table()
        table.add_column(label, style="bold")
        table.add_column("Requests", justify="right")
        table.add_column("Failed attempts", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for name, bucket in sorted(buckets.items()):
            table.add_row(
                name,
                str(bucket.requests),
                str(bucket.failed_attempts),
                f"{bucket.tokens:,}",
                _format_currency(bucket.cost, places=4),
            )
        console.print(table)

    console.print(f"Total requests: {summary.total_requests}")
    console.print(f"Failed attempts: {summary.failed_attempts}")
    console.print(f"Total cost: {_format_currency(summary.total_cost, places=4)}")
    console.print(f"Average latency: {summary.average_latency_ms:,.1f} ms")


if __name__ == "__main__":
    app()
