"""OpsPilot CLI interface."""

import typer
from rich.console import Console

# CLI App
app = typer.Typer(
    name="opspilot",
    help="Cron-driven automation for managed servers.",
    no_args_is_help=True,
)

server_app = typer.Typer(help="Manage servers.", no_args_is_help=True)
task_app = typer.Typer(help="Manage scheduled tasks.", no_args_is_help=True)
group_app = typer.Typer(help="Manage task groups.", no_args_is_help=True)

app.add_typer(server_app, name="server")
app.add_typer(task_app, name="task")
app.add_typer(group_app, name="group")

# Console for rich output
console = Console()

# Import commands to register them
from opspilot.cli.commands import groups, init, serve, servers, tasks  # noqa: E402, F401


@app.command()
def version() -> None:
    """Show OpsPilot version."""
    from opspilot import __version__

    console.print(f"OpsPilot v{__version__}")


if __name__ == "__main__":
    app()
