"""Init command for OpsPilot CLI."""

import typer
import yaml

from opspilot.cli import app, console
from opspilot.config import get_config_path, get_opspilot_dir
from opspilot.storage import init_database


@app.command()
def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing configuration",
    ),
) -> None:
    """Initialize the OpsPilot directory structure.

    Creates the OpsPilot home directory (~/.opspilot or $OPSPILOT_HOME) with:
    - logs/ directory for scheduler logs
    - config.yaml with default settings
    - opspilot.db holding tasks, groups and execution history
    """
    home = get_opspilot_dir()
    config_path = get_config_path()

    if config_path.exists() and not force:
        console.print(f"[yellow]OpsPilot already initialized at {home}[/]")
        console.print("Use [cyan]--force[/] to reinitialize")
        raise typer.Exit(1)

    (home / "logs").mkdir(parents=True, exist_ok=True)

    default_config = {
        "scheduler": {
            "max_workers": 10,
            "misfire_grace_time": 60,
            "action_timeout": 3600,
            "sync_interval": 30,
            "reconcile_on_start": True,
            "history_retention_days": 30,
            "log_level": "INFO",
        },
        "servers": {},
    }
    config_path.write_text(yaml.dump(default_config, default_flow_style=False, sort_keys=False))

    db = init_database(home / "opspilot.db")
    db.dispose()

    console.print(f"[green]✓[/] Initialized OpsPilot at [cyan]{home}[/]")
    console.print(f"  Config:   {config_path}")
    console.print(f"  Database: {home / 'opspilot.db'}")
