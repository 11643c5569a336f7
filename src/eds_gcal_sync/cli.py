"""
Command-line interface for EDS → Google Calendar sync.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from eds_gcal_sync.db import StateDatabase
from eds_gcal_sync.db import query_status_all_pairs
from eds_gcal_sync.models import DEFAULT_CONFIG
from eds_gcal_sync.models import DEFAULT_STATE_DB
from eds_gcal_sync.models import CalendarSyncError
from eds_gcal_sync.models import SyncConfig
from eds_gcal_sync.models import SyncResult
from eds_gcal_sync.settings import ReloadStatus
from eds_gcal_sync.settings import default_config
from eds_gcal_sync.settings import load_settings

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="One-way sync of a groupware calendar (via EDS) into Google Calendar.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
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


def _load_base_config() -> SyncConfig:
    """Read the config file, stopping the command on errors or after an upgrade."""
    if not state.config_path.exists():
        return default_config(state.state_db)

    reload = load_settings(state.config_path, state.state_db)
    if reload.status is ReloadStatus.ERROR:
        console.print(f"[bold red]Error:[/] {reload.error}")
        raise typer.Exit(1)
    if reload.status is ReloadStatus.CONFIG_CHANGED:
        body = Text()
        body.append("  New settings were added to ", style="bold")
        body.append(f"{state.config_path}:\n")
        for key in reload.added_keys:
            body.append(f"    {key}\n", style="cyan")
        body.append("  Review them and run the command again.", style="yellow")
        console.print(Panel(body, title="[bold yellow]Configuration upgraded[/bold yellow]"))
        raise typer.Exit(0)
    return reload.config


def _build_config(
    source_calendar: str | None,
    target_calendar: str | None,
    dry_run: bool,
    yes: bool,
    full_resync: bool = False,
) -> SyncConfig:
    base = _load_base_config()
    source_id = source_calendar or base.source_calendar_id
    target_id = target_calendar or base.target_calendar_id

    if not source_id:
        console.print(
            "[bold red]Error:[/] A source calendar ID must be provided via "
            "[cyan]--source-calendar[/] or [cyan]source_calendar_id[/] in the config file."
        )
        raise typer.Exit(1)

    return replace(
        base,
        source_calendar_id=source_id,
        target_calendar_id=target_id,
        full_resync=full_resync or base.full_resync,
        dry_run=dry_run,
        verbose=state.verbose,
        yes=yes,
    )


def _calendar_label(calendar_uid: str) -> tuple[str, str]:
    """Best-effort (display, uid) for an EDS calendar; falls back to the raw UID."""
    try:
        from eds_gcal_sync.eds_client import get_calendar_display_info

        name, account, uid = get_calendar_display_info(calendar_uid)
    except (ImportError, ValueError):
        return calendar_uid, calendar_uid
    return name + (f" ({account})" if account else ""), uid


def _print_info_panel(cfg: SyncConfig, operation: Text) -> None:
    source_display, source_uid = _calendar_label(cfg.source_calendar_id)

    info = Text()
    info.append("  Source:    ", style="bold")
    info.append(f"{source_display}\n")
    info.append(f"             {source_uid}\n", style="dim")
    info.append("  Target:    ", style="bold")
    info.append(f"Google Calendar {cfg.target_calendar_id}\n")
    info.append("  Types:     ", style="bold")
    info.append(", ".join(sorted(c.value for c in cfg.allowed_categories)))
    info.append("\n  Operation: ")
    info.append_text(operation)
    if cfg.dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")

    console.print(Panel(info, title="[bold]EDS → Google Calendar Sync[/bold]"))


def _print_results(result: SyncResult, clear: bool = False) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    if not clear:
        results.add_row("Created", str(result.created))
        results.add_row("Updated", str(result.updated))
    results.add_row("Deleted", str(result.deleted))
    if not clear:
        results.add_row("Unchanged", str(result.skipped))
        results.add_row("Filtered", str(result.filtered))
    failed_val = Text(str(len(result.failed)))
    if result.ok:
        failed_val.append(" ✓", style="green")
    else:
        failed_val.stylize("bold red")
    results.add_row("Failed", failed_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    for item in result.failed:
        console.print(f"  [red]✗[/] {item.operation} [cyan]{item.uid}[/]: {item.reason}")


def _build_synchronizer(cfg: SyncConfig, state_db: StateDatabase):
    from eds_gcal_sync.eds_client import EDSCalendarSource
    from eds_gcal_sync.google_client import GoogleCalendarSink
    from eds_gcal_sync.sync import CalendarSynchronizer

    source = EDSCalendarSource(
        cfg.source_calendar_id,
        timeout=cfg.request_timeout_seconds,
        expansion_horizon=timedelta(days=cfg.horizon_days),
    )
    sink = GoogleCalendarSink.from_token_file(
        cfg.token_file, cfg.target_calendar_id, timeout=cfg.request_timeout_seconds
    )
    return CalendarSynchronizer(
        cfg, source, sink, state_db, logger=logging.getLogger("eds_gcal_sync")
    )


def _run(cfg: SyncConfig, clear: bool = False) -> None:
    """Core runner: preflight, display panel, confirm, run, show results."""
    from eds_gcal_sync.preflight import run_preflight_checks

    if not run_preflight_checks(cfg, console, need_source=not clear):
        raise typer.Exit(1)

    if clear:
        operation = Text("CLEAR (remove all synced events, no resync)", style="bold red")
    elif cfg.full_resync:
        operation = Text("REFRESH (ignore last sync, reconcile everything)", style="bold yellow")
    else:
        operation = Text("SYNC", style="bold green")
    _print_info_panel(cfg, operation)

    if not cfg.yes and not cfg.dry_run:
        typer.confirm("Proceed?", abort=True)

    try:
        with StateDatabase(
            cfg.state_db_path, cfg.source_calendar_id, cfg.target_calendar_id
        ) as state_db:
            synchronizer = _build_synchronizer(cfg, state_db)
            result = synchronizer.clear() if clear else synchronizer.run_sync()
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

    _print_results(result, clear=clear)

    if not result.ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: sync / refresh / clear share the same options
# ---------------------------------------------------------------------------

_SOURCE_OPT = Annotated[
    str | None,
    typer.Option("--source-calendar", "-s", help="Source EDS calendar UID (overrides config)"),
]
_TARGET_OPT = Annotated[
    str | None,
    typer.Option("--target-calendar", "-t", help="Google calendar ID (overrides config)"),
]
_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    source_calendar: _SOURCE_OPT = None,
    target_calendar: _TARGET_OPT = None,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Copy new, changed and removed events from the source into Google Calendar."""
    _run(_build_config(source_calendar, target_calendar, dry_run=dry_run, yes=yes))


@app.command()
def refresh(
    source_calendar: _SOURCE_OPT = None,
    target_calendar: _TARGET_OPT = None,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Full resync: ignore the last sync time and reconcile the whole calendar."""
    _run(
        _build_config(source_calendar, target_calendar, dry_run=dry_run, yes=yes, full_resync=True)
    )


@app.command()
def clear(
    source_calendar: _SOURCE_OPT = None,
    target_calendar: _TARGET_OPT = None,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Remove every synced event from Google Calendar without re-syncing.

    Events created directly in Google Calendar are never touched.
    """
    _run(_build_config(source_calendar, target_calendar, dry_run=dry_run, yes=yes), clear=True)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


def _format_last_sync(value: str | None) -> str:
    if not value:
        return "—"
    try:
        return datetime.fromisoformat(value).astimezone().strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


@app.command()
def status() -> None:
    """Show sync configuration and state database summary."""
    config_exists = state.config_path.exists()
    db_exists = state.state_db.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")

    configured = None
    if config_exists:
        reload = load_settings(state.config_path, state.state_db, write_back=False)
        if reload.status is ReloadStatus.ERROR:
            cfg_info.append("\n  Problem:  ", style="bold")
            cfg_info.append(reload.error or "", style="red")
        else:
            configured = reload.config
            if reload.status is ReloadStatus.CONFIG_CHANGED:
                cfg_info.append("\n  Missing:  ", style="bold")
                cfg_info.append(", ".join(reload.added_keys), style="yellow")

    if configured is not None and configured.source_calendar_id:
        source_display, source_uid = _calendar_label(configured.source_calendar_id)
        cfg_info.append("\n\n  Source:   ", style="bold")
        cfg_info.append(source_display + "\n")
        cfg_info.append(f"            {source_uid}", style="dim")
        cfg_info.append("\n  Target:   ", style="bold")
        cfg_info.append(configured.target_calendar_id)

    console.print(Panel(cfg_info, title="[bold]EDS → Google Calendar Sync — Status[/bold]"))

    rows = query_status_all_pairs(state.state_db)
    if not rows:
        if not db_exists:
            console.print(
                "[yellow]No state database yet — run[/] "
                "[cyan]eds-gcal-sync sync[/] "
                "[yellow]to create it.[/]"
            )
        else:
            console.print("[yellow]State database is empty — no syncs recorded yet.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Source")
    table.add_column("Target")
    table.add_column("Last sync")
    for row in rows:
        source_id = row["source_calendar_id"]
        target_id = row["target_calendar_id"]
        source_display, _ = _calendar_label(source_id)
        label = Text(source_display)
        if (
            configured is not None
            and source_id == configured.source_calendar_id
            and target_id == configured.target_calendar_id
        ):
            label.append("  (configured)", style="green")
        table.add_row(label, target_id, _format_last_sync(row["last_sync_at"]))

    console.print(Panel(table, title="[bold]Sync state[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List all configured EDS calendars."""
    from eds_gcal_sync.eds_client import list_calendars

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name", style="bold")
    table.add_column("Account")
    table.add_column("UID", style="dim")
    for name, account, uid in list_calendars():
        table.add_row(name, account, uid)
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
