"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from urllib.parse import urlparse

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from ics_calendar_sync.db import check_integrity_at
from ics_calendar_sync.models import SyncConfig

logger = logging.getLogger(__name__)


def run_preflight_checks(cfg: SyncConfig, console: Console, check_store: bool = True) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Feed URL well-formed
    parsed = urlparse(cfg.source_url)
    if parsed.scheme not in ("http", "https", "webcal") or not parsed.netloc:
        logger.error("Invalid feed URL: %s", cfg.source_url)
        issues.append(
            (
                "Feed URL",
                cfg.source_url or "(empty)",
                "Set [source] url in the config file or pass --url",
            )
        )

    # 2. State DB parent dir writable + DB intact if it exists
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create state DB directory %s: %s", db_path.parent, e)
        issues.append(
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                # BEGIN IMMEDIATE needs a journal file next to the DB.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                conn.close()
            except sqlite3.Error as e:
                logger.error("State DB not readable/writable (%s): %s", db_path, e)
                issues.append(
                    (
                        "State database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent}",
                    )
                )
            else:
                if not check_integrity_at(db_path):
                    logger.error("State DB failed integrity check: %s", db_path)
                    issues.append(
                        (
                            "State database",
                            f"{db_path}: integrity check failed",
                            "Run: ics-calendar-sync reset",
                        )
                    )

    # 3. EDS registry reachable
    if check_store:
        import gi

        gi.require_version("EDataServer", "1.2")
        from gi.repository import EDataServer

        try:
            EDataServer.SourceRegistry.new_sync(None)
        except Exception as e:
            logger.error("EDS registry unreachable: %s", e)
            issues.append(("EDS registry", str(e), "Is evolution-data-server running?"))

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
