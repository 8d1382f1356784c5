"""
CLI interface for Usage Ledger.

Provides command-line access to ingestion, views, exports and store maintenance.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_ledger.config.loader import EngineConfig, View, load_engine_config
from usage_ledger.core.currency import StaticCurrencyProvider, convert_from_usd, format_amount
from usage_ledger.core.export import TABLE_KEYS
from usage_ledger.core.facade import TabDataFacade
from usage_ledger.core.ingestion import IngestionCoordinator, default_source_paths
from usage_ledger.core.pricing import PRICING_TABLE, PricingTable
from usage_ledger.core.worker import AggregationWorker, ProgressEvent
from usage_ledger.storage.models import parse_iso_timestamp
from usage_ledger.storage.repository import GROUP_EXPRESSIONS, AggregateFilter, UsageRepository

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Columns shown for each view's table, in order
VIEW_COLUMNS: Dict[str, List[str]] = {
    "projects": ["name", "entries", "sessions", "total_tokens", "cost"],
    "sessions": ["display_id", "project", "start", "duration_minutes", "entries", "total_tokens", "cost"],
    "monthly": ["label", "entries", "sessions", "active_days", "total_tokens", "cost", "running_cost"],
    "daily": ["date", "entries", "sessions", "total_tokens", "cost", "running_cost"],
    "active": ["start", "end", "entries", "total_tokens"],
}

COST_FIELDS = {"cost", "running_cost"}


def _configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    )
):
    """Usage Ledger CLI."""
    ctx.obj = {"config_path": config, "verbose": verbose}
    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> EngineConfig:
    options = ctx.obj or {}
    config = load_engine_config(options.get("config_path"))
    _configure_logging("DEBUG" if options.get("verbose") else config.log_level)
    return config


def _pricing(config: EngineConfig) -> PricingTable:
    return PRICING_TABLE.with_overrides(config.pricing)


def _source_paths(config: EngineConfig) -> List[Path]:
    if config.source_paths:
        return [Path(p).expanduser() for p in config.source_paths]
    return default_source_paths()


def _open_repository(config: EngineConfig) -> UsageRepository:
    repository = UsageRepository(str(config.resolved_database_path))
    repository.initialize()
    return repository


def _build_coordinator(config: EngineConfig, repository: UsageRepository) -> IngestionCoordinator:
    sources = _source_paths(config)
    if not sources:
        logger.warning("No log directories found; set source_paths in the configuration")
    return IngestionCoordinator(repository, sources, pricing=_pricing(config))


def _build_facade(
    config: EngineConfig,
    repository: UsageRepository,
    worker: AggregationWorker
) -> TabDataFacade:
    rate = StaticCurrencyProvider(config.exchange_rates).rate_for(config.currency)
    return TabDataFacade(
        repository,
        _build_coordinator(config, repository),
        worker=worker,
        currency=config.currency,
        exchange_rate=rate,
        billing_cycle_day=config.billing_cycle_day,
        refresh_intervals=config.refresh_intervals,
        on_progress=_log_progress
    )


def _log_progress(event: ProgressEvent) -> None:
    logger.debug("[%3.0f%%] %s: %s", event.percent, event.step, event.message)


def _parse_view(name: str) -> View:
    try:
        return View(name.lower())
    except ValueError:
        valid = ", ".join(v.value for v in View)
        raise typer.BadParameter(f"Unknown view '{name}', expected one of: {valid}")


def _format_value(key: str, value: Any, currency: str) -> str:
    if value is None:
        return "-"
    if key in COST_FIELDS or key.endswith("_cost") or key.startswith("projected_"):
        if isinstance(value, (int, float)):
            return format_amount(value, currency)
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value:,}"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


def _display_view(view: View, data: Dict[str, Any]) -> None:
    """Print a view as a summary table followed by its detail table."""
    currency = data.get("currency", "USD")
    console.print(f"\n[bold]Usage Ledger - {view.value.title()}[/bold]")
    console.print("-" * 40)

    summary = Table(show_header=False, box=None)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    for key, value in data.items():
        if isinstance(value, (dict, list)) and key not in ("models",):
            continue
        summary.add_row(key.replace("_", " ").capitalize(), _format_value(key, value, currency))
    console.print(summary)

    table_key = TABLE_KEYS.get(view.value)
    rows = data.get(table_key) if table_key else None
    if not rows:
        return
    columns = VIEW_COLUMNS[view.value]
    table = Table(title=table_key.replace("_", " ").title())
    for column in columns:
        table.add_column(column.replace("_", " ").title(),
                         justify="left" if column in columns[:1] else "right")
    for row in rows:
        table.add_row(*[_format_value(c, row.get(c), currency) for c in columns])
    console.print(table)


@app.command()
def init(ctx: typer.Context):
    """Initialize the Usage Ledger database."""
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        console.print(f"[green]✓[/] Database initialized at {repository.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ingest(ctx: typer.Context):
    """Read new log lines into the database."""
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        result = _build_coordinator(config, repository).run_pass()

        table = Table(title="Ingestion Pass")
        table.add_column("Counter", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Files scanned", f"{result.files_scanned:,}")
        table.add_row("Lines read", f"{result.lines_read:,}")
        table.add_row("Records parsed", f"{result.records_parsed:,}")
        table.add_row("Inserted", f"{result.inserted:,}")
        table.add_row("Duplicates", f"{result.duplicates:,}")
        table.add_row("Repaired timestamps", f"{result.timestamp_repairs:,}")
        table.add_row("Read errors", f"{result.read_errors:,}")
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def view(
    ctx: typer.Context,
    name: str = typer.Argument("overview", help="overview, projects, sessions, monthly, daily or active")
):
    """Show one view, refreshing it if its data is stale."""
    selected = _parse_view(name)
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        with AggregationWorker(config.aggregation_timeout_seconds) as worker:
            facade = _build_facade(config, repository, worker)
            with console.status("Aggregating usage..."):
                data = facade.get_view(selected)
        _display_view(selected, data)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def export(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="View to export"),
    fmt: str = typer.Option(
        "json",
        "--format",
        "-f",
        help="json, csv or markdown"
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write to this file instead of stdout"
    )
):
    """Export a view as JSON, CSV or Markdown."""
    selected = _parse_view(name)
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        with AggregationWorker(config.aggregation_timeout_seconds) as worker:
            facade = _build_facade(config, repository, worker)
            document = facade.export_view(selected, fmt)

        if output is None:
            typer.echo(document, nl=False)
        else:
            output.write_text(document, encoding="utf-8")
            console.print(f"[green]✓[/] Exported {selected.value} to {output}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def refresh(
    ctx: typer.Context,
    name: str = typer.Option(
        "overview",
        "--view",
        help="View to refresh"
    ),
    all_views: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Rescan every log line and rebuild all views"
    )
):
    """Refresh a view now, ignoring its staleness window."""
    selected = _parse_view(name)
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        with AggregationWorker(config.aggregation_timeout_seconds) as worker:
            facade = _build_facade(config, repository, worker)
            with console.status("Refreshing..."):
                if all_views:
                    facade.force_refresh_all()
                else:
                    data = facade.force_refresh(selected)

        if all_views:
            ingested = facade.last_ingestion
            console.print(
                f"[green]✓[/] Refreshed all views "
                f"({ingested.inserted if ingested else 0} new records)"
            )
        else:
            _display_view(selected, data)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(
    ctx: typer.Context,
    by: str = typer.Option(
        "project",
        "--by",
        "-b",
        help="session, project, model, day, month or billing_period"
    ),
    since: Optional[str] = typer.Option(None, "--since", help="ISO start timestamp (inclusive)"),
    until: Optional[str] = typer.Option(None, "--until", help="ISO end timestamp (exclusive)"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Only this model"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show")
):
    """Summarize stored usage grouped inside the database."""
    if by not in GROUP_EXPRESSIONS:
        valid = ", ".join(sorted(GROUP_EXPRESSIONS))
        raise typer.BadParameter(f"Unknown grouping '{by}', expected one of: {valid}")
    start = parse_iso_timestamp(since) if since else None
    end = parse_iso_timestamp(until) if until else None
    if (since and start is None) or (until and end is None):
        raise typer.BadParameter("--since and --until must be ISO 8601 timestamps")

    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        rate = StaticCurrencyProvider(config.exchange_rates).rate_for(config.currency)
        rows = repository.aggregate(
            by,
            AggregateFilter(start=start, end=end, project=project, model=model),
            billing_cycle_day=config.billing_cycle_day
        )

        if not rows:
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("Run `usage-ledger ingest` to read your logs first.\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title=f"Usage by {by.replace('_', ' ')}")
        table.add_column(by.replace("_", " ").title(), style="cyan")
        table.add_column("Entries", justify="right")
        table.add_column("Sessions", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for row in rows[:limit]:
            table.add_row(
                row.key,
                f"{row.entries:,}",
                f"{row.sessions:,}",
                f"{row.total_tokens:,}",
                format_amount(convert_from_usd(row.cost, rate), config.currency)
            )
        console.print(table)
        if len(rows) > limit:
            console.print(f"[dim]{len(rows) - limit} more rows not shown[/]")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show database location, health and contents."""
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        info = repository.database_info()
        healthy = repository.integrity_ok()

        table = Table(show_header=False, box=None)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Database", info.path)
        table.add_row("Size", f"{info.size_bytes / 1024:,.1f} KiB")
        table.add_row("Integrity", "[green]ok[/]" if healthy else "[red]failed[/]")
        table.add_row("Entries", f"{info.entries:,}")
        table.add_row("Sessions", f"{info.sessions:,}")
        table.add_row("Projects", f"{info.projects:,}")
        table.add_row("Models", f"{info.models:,}")
        table.add_row("First entry", info.first_timestamp.isoformat() if info.first_timestamp else "-")
        table.add_row("Last entry", info.last_timestamp.isoformat() if info.last_timestamp else "-")
        sources = _source_paths(config)
        table.add_row("Log sources", "\n".join(str(p) for p in sources) or "-")
        console.print(table)
        sys.exit(EXIT_CODE_PASS if healthy else EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def recost(ctx: typer.Context):
    """Recompute stored costs with the current price table."""
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        changed = repository.update_costs(_pricing(config))
        console.print(f"[green]✓[/] Updated cost for {changed:,} entries")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def cleanup(ctx: typer.Context):
    """Delete entries with timestamps before 2020 or in the future."""
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        pruned = repository.prune_invalid_timestamps()
        console.print(f"[green]✓[/] Removed {pruned:,} entries with invalid timestamps")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def vacuum(ctx: typer.Context):
    """Reclaim unused space in the database file."""
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        repository.vacuum()
        console.print("[green]✓[/] Database vacuumed")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt"
    )
):
    """Delete every stored entry."""
    if not yes and not typer.confirm("Delete all stored usage entries?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_PASS)
    try:
        config = _load_config(ctx)
        repository = _open_repository(config)
        removed = repository.clear_all()
        console.print(f"[green]✓[/] Deleted {removed:,} entries")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
