"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from eds_gcal_sync.models import SyncConfig

logger = logging.getLogger(__name__)

_OFFLINE_KEYWORDS = frozenset(
    {
        "offline",
        "network",
        "transport",
        "unreachable",
        "not connected",
        "no route",
        "authentication failed",
        "connection refused",
        "temporary failure",
    }
)


def check_source_calendar(cfg: SyncConfig) -> list[tuple[str, str, str]]:
    """EDS registry reachable, source calendar known and connectable."""
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    from eds_gcal_sync.eds_client import _parent_display_name

    label = "Source calendar"
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error(f"EDS registry unreachable: {e.message}")
        return [("EDS registry", e.message or str(e), "Is evolution-data-server running?")]

    source = registry.ref_source(cfg.source_calendar_id)
    if source is None:
        logger.error(f"Calendar UID not found in EDS: {cfg.source_calendar_id}")
        return [
            (
                label,
                f"UID not found: {cfg.source_calendar_id}",
                "Run: eds-gcal-sync calendars",
            )
        ]

    try:
        ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
    except GLib.Error as e:
        msg = e.message or str(e)
        logger.error(f"Cannot connect to source calendar ({cfg.source_calendar_id}): {msg}")
        if any(kw in msg.lower() for kw in _OFFLINE_KEYWORDS):
            account_name = _parent_display_name(registry, source)
            if account_name:
                hint = f"Account '{account_name}' appears offline; check GNOME Online Accounts"
            else:
                hint = "Calendar appears offline; check GNOME Online Accounts"
        else:
            hint = msg
        return [(label, f"Connection failed: {msg}", hint)]
    return []


def check_token_file(cfg: SyncConfig) -> list[tuple[str, str, str]]:
    if cfg.token_file.is_file():
        return []
    logger.error(f"Google token file missing: {cfg.token_file}")
    return [
        (
            "Google account",
            f"Token file not found: {cfg.token_file}",
            "Authorize access to Google Calendar and store the token there "
            "(or set google_token_file in the config)",
        )
    ]


def check_state_db(cfg: SyncConfig) -> list[tuple[str, str, str]]:
    """State DB parent dir writable + DB readable if it exists."""
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create state DB directory {db_path.parent}: {e}")
        return [("State database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")]

    if not db_path.exists():
        return []
    try:
        conn = sqlite3.connect(db_path)
        try:
            conn.execute("SELECT 1")
            # BEGIN IMMEDIATE takes the write lock and needs a journal file
            # next to the DB, so a read-only directory is caught here.
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("ROLLBACK")
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"State DB not readable/writable ({db_path}): {e}")
        return [
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent} "
                f"(journal files must be creatable alongside the DB); "
                f"if using a systemd service, ensure ReadWritePaths "
                f"covers the parent directory, not just the file",
            )
        ]
    return []


def run_preflight_checks(cfg: SyncConfig, console: Console, need_source: bool = True) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)
    if need_source:
        issues.extend(check_source_calendar(cfg))
    issues.extend(check_token_file(cfg))
    issues.extend(check_state_db(cfg))

    if issues:
        _print_issues(issues, console)
        return False
    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
