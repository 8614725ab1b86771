"""Utility functions for OpsPilot CLI."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import typer

from opspilot.cli import console
from opspilot.config import ConfigError, get_opspilot_dir, load_settings

if TYPE_CHECKING:
    from opspilot.scheduler import AutomationManager

STATUS_STYLES = {
    "success": "green",
    "failed": "red",
    "partial": "yellow",
    "running": "cyan",
    "skipped": "dim",
}


def get_manager() -> AutomationManager:
    """Build an AutomationManager from the OpsPilot configuration.

    Raises:
        typer.Exit: If OpsPilot is not initialized or the config is invalid.
    """
    from opspilot.scheduler import AutomationManager

    if not get_opspilot_dir().exists():
        console.print("[red]Error:[/] OpsPilot not initialized.")
        console.print("Run [cyan]opspilot init[/] first.")
        raise typer.Exit(1)

    try:
        settings = load_settings()
    except ConfigError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    return AutomationManager.from_settings(settings)


def format_datetime(dt: datetime | None) -> str:
    """Format a datetime for display."""
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_status(status: str | None) -> str:
    """Colorize a status value."""
    if status is None:
        return "[dim]-[/]"
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/]"
