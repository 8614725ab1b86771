"""Serve and status commands for OpsPilot CLI.

``serve`` runs the scheduler in the foreground until it receives SIGINT or
SIGTERM, then cancels every timer and exits.
"""

from __future__ import annotations

import json
import logging
import signal
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.table import Table

from opspilot.cli import app, console
from opspilot.cli.utils import format_datetime, format_status, get_manager
from opspilot.config import get_opspilot_dir, load_settings

if TYPE_CHECKING:
    from types import FrameType

logger = logging.getLogger(__name__)


def get_log_file() -> Path:
    """Get the path to the scheduler log file."""
    log_dir = get_opspilot_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "scheduler.log"


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Set up logging for the scheduler process.

    Args:
        level: Root log level name.
        log_file: Optional file to log to in addition to stderr.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
    # APScheduler logs every fire at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def setup_signal_handlers(stop_event: threading.Event) -> None:
    """Set up signal handlers for graceful shutdown."""

    def handle_signal(signum: int, frame: FrameType | None) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


@app.command()
def serve(
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging",
    ),
    log_to_file: bool = typer.Option(
        True,
        "--log-file/--no-log-file",
        help="Also write logs to <home>/logs/scheduler.log",
    ),
) -> None:
    """Run the scheduler in the foreground.

    Closes executions left running by a previous crash, loads every enabled
    task and task group, and fires them on schedule until stopped. Changes
    made from other CLI sessions are picked up every ``sync_interval`` seconds.

    Examples:
        opspilot serve
        opspilot serve --debug
    """
    manager = get_manager()
    settings = load_settings()

    setup_logging("DEBUG" if debug else settings.log_level, get_log_file() if log_to_file else None)

    stop_event = threading.Event()
    setup_signal_handlers(stop_event)

    count = manager.start()
    console.print(f"[cyan]OpsPilot scheduler running with {count} schedule(s)[/]")
    console.print("[dim]Press Ctrl+C to stop[/]")

    try:
        stop_event.wait()
    finally:
        manager.shutdown(wait=False)
        console.print("\n[yellow]Scheduler stopped.[/]")


@app.command()
def status(
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Show every task and group with its schedule and last run.

    Next run times are computed from the stored cron expressions; they are
    only live while ``opspilot serve`` is running.
    """
    from opspilot.scheduler import next_fire_time

    manager = get_manager()
    rows = manager.status()

    for row in rows:
        row["next_run"] = next_fire_time(row["cron"]) if row["enabled"] else None

    if json_output:
        data = [
            {
                **row,
                "next_run": row["next_run"].isoformat() if row["next_run"] else None,
                "last_run": row["last_run"].isoformat() if row["last_run"] else None,
            }
            for row in rows
        ]
        console.print_json(json.dumps(data))
        return

    if not rows:
        console.print("[yellow]Nothing scheduled.[/]")
        return

    table = Table(title="Schedules (UTC)")
    table.add_column("Kind")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Cron")
    table.add_column("Enabled")
    table.add_column("Next Run")
    table.add_column("Last Run")
    table.add_column("Status")

    for row in rows:
        table.add_row(
            row["kind"],
            row["id"][:8],
            row["name"],
            row["cron"],
            "yes" if row["enabled"] else "no",
            format_datetime(row["next_run"]),
            format_datetime(row["last_run"]),
            format_status(row["last_status"]),
        )

    console.print(table)
