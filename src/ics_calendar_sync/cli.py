"""
Command-line interface for ICS Calendar Sync.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ics_calendar_sync.config import load_config
from ics_calendar_sync.daemon import SyncDaemon
from ics_calendar_sync.fetcher import FeedFetcher
from ics_calendar_sync.fetcher import headers_from_environment
from ics_calendar_sync.models import DEFAULT_CONFIG
from ics_calendar_sync.models import DEFAULT_STATE_DB
from ics_calendar_sync.models import CalendarSyncError
from ics_calendar_sync.models import RunStatus
from ics_calendar_sync.models import SyncConfig
from ics_calendar_sync.models import SyncResult
from ics_calendar_sync.models import SyncRunRecord
from ics_calendar_sync.sync import CalendarSynchronizer

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="One-way sync from an ICS feed into an Evolution Data Server calendar.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _build_config(**overrides) -> SyncConfig:
    try:
        cfg = load_config(state.config_path, state_db_path=state.state_db, **overrides)
    except CalendarSyncError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        raise typer.Exit(1) from None

    cfg.verbose = state.verbose
    if not state.verbose:
        logging.getLogger().setLevel(cfg.log_level.upper())
    return cfg


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "—"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


_STATUS_STYLE = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "red",
}


def _history_table(runs: list[SyncRunRecord]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Error", overflow="fold")
    for run in runs:
        table.add_row(
            _fmt_time(run.started_at),
            Text(run.status.value, style=_STATUS_STYLE[run.status]),
            str(run.created),
            str(run.updated),
            str(run.deleted),
            str(run.unchanged),
            run.error_message or "",
        )
    return table


def _print_results(result: SyncResult, dry_run: bool) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.created))
    results.add_row("Updated", str(result.updated))
    results.add_row("Deleted", str(result.deleted))
    results.add_row("Unchanged", str(result.unchanged))
    error_val = Text(str(len(result.errors)))
    if not result.errors:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    title = "[bold]Results (dry run)[/bold]" if dry_run else "[bold]Results[/bold]"
    console.print(Panel(results, title=title, expand=False))

    for error in result.errors:
        console.print(f"  [red]✗[/] {error.operation} [dim]{error.uid}[/dim]: {error.message}")


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    dry_run: _DRY_RUN = False,
    full: Annotated[
        bool, typer.Option("--full", help="Ignore the ledger and reconcile every event")
    ] = False,
    calendar: Annotated[
        str | None, typer.Option("--calendar", help="Destination calendar name (overrides config)")
    ] = None,
    url: Annotated[str | None, typer.Option("--url", help="Feed URL (overrides config)")] = None,
) -> None:
    """Fetch the feed and apply changes to the destination calendar."""
    from ics_calendar_sync.preflight import run_preflight_checks

    cfg = _build_config(source_url=url, calendar_name=calendar)
    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    info = Text()
    info.append("  Feed:      ", style="bold")
    info.append(f"{cfg.source_url}\n")
    info.append("  Calendar:  ", style="bold")
    info.append(cfg.calendar_name)
    info.append("\n  Operation: ")
    info.append(
        Text("FULL RESYNC", style="bold yellow") if full else Text("SYNC", style="bold green")
    )
    if dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")
    console.print(Panel(info, title="[bold]ICS Calendar Sync[/bold]"))

    try:
        result = CalendarSynchronizer(cfg).run(dry_run=dry_run, full_resync=full)
    except CalendarSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    _print_results(result, dry_run)
    if result.has_errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: status / history / reset
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and state database summary."""
    cfg = _build_config()
    db_exists = cfg.state_db_path.exists()

    info = Text()
    info.append("  Config:   ", style="bold")
    info.append(str(state.config_path) + " ")
    config_exists = state.config_path.exists()
    info.append("✓" if config_exists else "(not found)", style="green" if config_exists else "red")
    info.append("\n  State DB: ", style="bold")
    info.append(str(cfg.state_db_path) + " ")
    info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    info.append("\n  Feed:     ", style="bold")
    info.append(cfg.source_url)
    info.append("\n  Calendar: ", style="bold")
    info.append(cfg.calendar_name)

    if not db_exists:
        console.print(Panel(info, title="[bold]ICS Calendar Sync — Status[/bold]"))
        console.print(
            "[yellow]No state database yet — run[/] [cyan]ics-calendar-sync sync[/] "
            "[yellow]to create it.[/]"
        )
        return

    try:
        summary = CalendarSynchronizer(cfg).get_status()
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None

    info.append("\n\n  Tracked events: ", style="bold")
    info.append(str(summary.tracked_events))
    info.append("\n  Last success:   ", style="bold")
    info.append(_fmt_time(summary.last_success.completed_at if summary.last_success else None))
    console.print(Panel(info, title="[bold]ICS Calendar Sync — Status[/bold]"))

    if summary.recent_runs:
        console.print(
            Panel(_history_table(summary.recent_runs), title="[bold]Recent runs[/bold]", expand=False)
        )


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-l", min=1, help="Number of runs to show")] = 10,
) -> None:
    """Show recent sync runs."""
    cfg = _build_config()
    if not cfg.state_db_path.exists():
        console.print("[yellow]State database is empty — no syncs recorded yet.[/]")
        return
    try:
        runs = CalendarSynchronizer(cfg).get_history(limit)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    if not runs:
        console.print("[yellow]State database is empty — no syncs recorded yet.[/]")
        return
    console.print(_history_table(runs))


@app.command()
def reset(yes: _YES = False) -> None:
    """Forget all synced state. Calendar entries are left in place."""
    cfg = _build_config()
    if not yes:
        typer.confirm(f"Reset state database {cfg.state_db_path}?", abort=True)
    try:
        CalendarSynchronizer(cfg).reset_state()
    except CalendarSyncError as e:
        console.print(f"[bold red]Reset failed:[/] {e}")
        raise typer.Exit(1) from None
    console.print("[green]State database reset.[/] The next sync will re-adopt existing entries.")


# ---------------------------------------------------------------------------
# Subcommands: validate / calendars
# ---------------------------------------------------------------------------


@app.command()
def validate(
    url: Annotated[str | None, typer.Argument(help="Feed URL (default: configured URL)")] = None,
) -> None:
    """Fetch and parse a feed without writing anything."""
    if url is None:
        cfg = _build_config()
        url = cfg.source_url
        headers = {**headers_from_environment(), **cfg.headers}
        fetcher = FeedFetcher(cfg.timeout, cfg.max_retries, cfg.retry_delay, headers, cfg.verify_ssl)
    else:
        fetcher = FeedFetcher(headers=headers_from_environment())

    try:
        report = fetcher.validate(url)
    except CalendarSyncError as e:
        console.print(f"[bold red]Fetch failed:[/] {e}")
        raise typer.Exit(1) from None

    if not report.is_valid:
        console.print(f"[bold red]Invalid feed:[/] {report.error}")
        raise typer.Exit(1)

    body = Table.grid(padding=(0, 2))
    body.add_column(style="bold")
    body.add_column()
    body.add_row("Events", str(report.event_count))
    body.add_row("Earliest", _fmt_time(report.earliest))
    body.add_row("Latest", _fmt_time(report.latest))
    body.add_row("Skipped", str(len(report.diagnostics)))
    console.print(Panel(body, title="[bold green]Feed is valid[/bold green]", expand=False))

    if report.sample_events:
        sample = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        sample.add_column("Start")
        sample.add_column("Title")
        sample.add_column("UID", style="dim", overflow="fold")
        for event in report.sample_events:
            sample.add_row(_fmt_time(event.start), event.display_title, event.uid)
        console.print(sample)

    for diag in report.diagnostics:
        console.print(f"  [yellow]![/] {diag.uid or '(no UID)'}: {diag.message}")


@app.command()
def calendars() -> None:
    """List all calendars known to Evolution Data Server."""
    from ics_calendar_sync.eds_store import EDSCalendarStore

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name", style="bold")
    table.add_column("Account")
    table.add_column("Mode")
    table.add_column("UID", style="dim")

    for info in EDSCalendarStore().list_calendars():
        if info.writable is None:
            mode = Text("Unknown", style="red")
        elif info.writable:
            mode = Text("Read-write", style="green")
        else:
            mode = Text("Read-only", style="yellow")
        table.add_row(info.name, info.account, mode, info.ref)

    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: daemon
# ---------------------------------------------------------------------------


@app.command()
def daemon(
    interval: Annotated[
        int | None,
        typer.Option("--interval", "-i", min=1, help="Minutes between syncs (overrides config)"),
    ] = None,
) -> None:
    """Sync now and then every N minutes until interrupted."""
    cfg = _build_config(interval_minutes=interval)
    synchronizer = CalendarSynchronizer(cfg)

    runner = SyncDaemon(synchronizer.run, cfg.interval_minutes)
    runner.install_signal_handlers()
    console.print(
        f"[bold]Syncing[/] {cfg.source_url} → [cyan]{cfg.calendar_name}[/] "
        f"every {cfg.interval_minutes} min. Press Ctrl+C to stop."
    )
    runner.run()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
