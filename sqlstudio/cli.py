"""
SQLStudio CLI

Command-line interface for asking questions of a database in plain language.

Usage:
    sqlstudio ask "Total order amount per user"     # Generate, run and show SQL
    sqlstudio ask "..." --tables users,orders       # Skip table analysis
    sqlstudio ask "Delete test users" --mutate      # Data-modifying request
    sqlstudio databases                             # List databases on the server
    sqlstudio tables --database shop                # List tables of a database
    sqlstudio models                                # List available model ids

Connection and provider settings come from the environment (DATABASE_*,
LLM_*, see sqlstudio.config).
"""

import asyncio
import logging
import signal
import sys
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sqlstudio import __version__
from sqlstudio.agents.events import (
    AgentEvent,
    Retrying,
    SqlExecuted,
    StepChanged,
    StreamingToken,
    TableAnalysisCompleted,
)
from sqlstudio.config import Settings, get_settings
from sqlstudio.connectors.base import ConnectionConfig, ConnectorError, SqlExecutionResult
from sqlstudio.connectors.registry import ConnectionManager
from sqlstudio.llm.openai import list_models
from sqlstudio.models.agent import AgentError, SqlAgentResult
from sqlstudio.services.agent_service import SqlAgentService

console = Console()

CONNECTION_NAME = "default"
MAX_DISPLAY_ROWS = 50


def configure_cli_logging(verbose: bool = False) -> None:
    """Keep library logs out of the terminal unless --verbose is given."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, force=True)
        return
    logging.basicConfig(level=logging.CRITICAL, force=True)
    for logger_name in ("sqlstudio", "httpx", "openai", "anthropic", "asyncio"):
        logging.getLogger(logger_name).setLevel(logging.CRITICAL)


def load_settings() -> Settings:
    settings = get_settings()
    # Settings loading applies LOG_* config; the CLI chooses its own levels.
    configure_cli_logging(bool(click.get_current_context().find_root().obj))
    return settings


def connection_config(settings: Settings, database: str | None = None) -> ConnectionConfig:
    db = settings.database
    return ConnectionConfig(
        host=db.host,
        port=db.port or 0,
        database=database or db.name,
        username=db.username,
        password=db.password,
        extra_params=db.extra_params,
    )


async def open_connections(settings: Settings, database: str | None = None) -> ConnectionManager:
    """Connect the configured database under the default connection name."""
    connections = ConnectionManager(
        pool_size=settings.database.pool_size, timeout=settings.database.timeout
    )
    await connections.create_connection(
        CONNECTION_NAME, settings.database.db_type, connection_config(settings, database)
    )
    return connections


# ============================================================================
# Output
# ============================================================================


class EventPrinter:
    """Render agent events live: step messages, streamed tokens, retries."""

    def __init__(self):
        self._streaming = False

    def __call__(self, event: AgentEvent) -> None:
        if isinstance(event, StreamingToken):
            if not self._streaming:
                label = (
                    "Analysis"
                    if event.phase == "TableAnalysis"
                    else f"Attempt {event.attempt_number}"
                )
                console.print(f"[dim]{label}:[/dim]")
                self._streaming = True
            console.print(event.token, end="", markup=False, highlight=False)
            return

        self.finish()
        if isinstance(event, StepChanged):
            console.print(f"[cyan]> {event.message}[/cyan]")
        elif isinstance(event, TableAnalysisCompleted):
            selected = ", ".join(event.selected_tables) or "all"
            console.print(
                f"[dim]Tables: {selected} ({len(event.selected_tables)}/{event.total_tables})[/dim]"
            )
        elif isinstance(event, SqlExecuted) and not event.execution_result.success:
            console.print(f"[red]Execution failed: {event.execution_result.error_message}[/red]")
        elif isinstance(event, Retrying):
            console.print(
                f"[yellow]Retrying ({event.attempt_number}/{event.max_attempts})[/yellow]"
            )

    def finish(self) -> None:
        if self._streaming:
            console.print()
            self._streaming = False


def format_execution(execution: SqlExecutionResult) -> None:
    """Display a result table, or the affected row count for statements."""
    if execution.data is None or not execution.data.columns:
        console.print(f"[green]{execution.affected_rows} rows affected[/green]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    for column in execution.data.columns:
        table.add_column(column)
    for row in execution.data.rows[:MAX_DISPLAY_ROWS]:
        table.add_row(*[_cell(row.get(column)) for column in execution.data.columns])
    console.print(table)

    footer = f"{execution.data.row_count} rows in {execution.execution_time_ms:.1f} ms"
    if execution.data.row_count > MAX_DISPLAY_ROWS:
        footer += f" (showing first {MAX_DISPLAY_ROWS})"
    console.print(f"[dim]{footer}[/dim]")


def _cell(value: Any) -> str:
    return "NULL" if value is None else str(value)


def format_result(result: SqlAgentResult) -> None:
    if result.cancelled:
        console.print(f"[yellow]{result.error_message}[/yellow]")
        return

    if result.final_sql:
        console.print(Panel(result.final_sql, title="SQL", border_style="cyan", highlight=True))
    if result.final_explanation:
        console.print(result.final_explanation)

    if result.success and result.execution_result is not None:
        format_execution(result.execution_result)
        console.print(f"[dim]Attempts: {result.total_attempts}[/dim]")
    else:
        console.print(f"[red]{result.error_message}[/red]")


# ============================================================================
# CLI Commands
# ============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="SQLStudio")
@click.option("--verbose", is_flag=True, help="Show debug logs.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """SQLStudio - ask your database questions in plain language."""
    ctx.obj = verbose
    configure_cli_logging(verbose)


@cli.command()
@click.argument("question")
@click.option("--tables", help="Comma-separated tables to use instead of table analysis.")
@click.option("--mutate", is_flag=True, help="Generate a data-modifying statement.")
@click.option("--database", help="Database to use instead of DATABASE_NAME.")
@click.option("--max-retries", type=click.IntRange(min=1), help="Maximum attempts.")
def ask(
    question: str,
    tables: str | None,
    mutate: bool,
    database: str | None,
    max_retries: int | None,
):
    """Generate SQL for QUESTION, run it and show the result."""
    settings = load_settings()
    specified_tables = [name.strip() for name in (tables or "").split(",") if name.strip()]

    async def run_query() -> SqlAgentResult:
        connections = await open_connections(settings, database)
        service: SqlAgentService | None = None

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            pass  # Ctrl-C falls back to KeyboardInterrupt

        printer = EventPrinter()
        try:
            service = SqlAgentService.from_settings(settings, connections=connections)
            if mutate:
                return await service.execute_non_query(
                    CONNECTION_NAME,
                    question,
                    cancel_event=cancel_event,
                    listeners=[printer],
                    max_retries=max_retries,
                )
            return await service.execute_query(
                CONNECTION_NAME,
                question,
                specified_tables=specified_tables or None,
                cancel_event=cancel_event,
                listeners=[printer],
                max_retries=max_retries,
            )
        finally:
            printer.finish()
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
            aclose = getattr(service.knowledge, "aclose", None) if service else None
            if aclose is not None:
                await aclose()
            await connections.dispose_all()

    try:
        result = asyncio.run(run_query())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped by user[/yellow]")
        sys.exit(130)
    except (ConnectorError, AgentError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    format_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
def databases():
    """List databases on the configured server."""
    settings = load_settings()

    async def run_list() -> tuple[list[str], str | None]:
        connections = await open_connections(settings)
        try:
            connector = connections.get_connection(CONNECTION_NAME)
            return await connector.get_databases(), connector.current_database
        finally:
            await connections.dispose_all()

    try:
        names, current = asyncio.run(run_list())
    except ConnectorError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title="Databases", show_header=True, header_style="bold cyan")
    table.add_column("Name")
    for name in names:
        table.add_row(f"[bold]{name}[/bold]" if name == current else name)
    console.print(table)


@cli.command()
@click.option("--database", help="Database to list instead of DATABASE_NAME.")
def tables(database: str | None):
    """List tables of a database."""
    settings = load_settings()

    async def run_list() -> list[str]:
        connections = await open_connections(settings, database)
        try:
            return await connections.get_connection(CONNECTION_NAME).get_tables()
        finally:
            await connections.dispose_all()

    try:
        names = asyncio.run(run_list())
    except ConnectorError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if not names:
        console.print("[yellow]No tables found.[/yellow]")
        return
    for name in names:
        console.print(name)


@cli.command()
def models():
    """List model ids offered by the configured provider."""
    settings = load_settings()
    llm = settings.llm

    if llm.default_provider == "openai":
        if not llm.openai_api_key:
            console.print("[red]LLM_OPENAI_API_KEY is not set.[/red]")
            sys.exit(1)
        ids = asyncio.run(list_models(llm.openai_api_key, llm.openai_base_url, llm.timeout))
    elif llm.default_provider == "anthropic":
        ids = [llm.anthropic_model]
    else:
        ids = [llm.local_model]

    for model_id in ids:
        console.print(model_id)


if __name__ == "__main__":
    cli()
