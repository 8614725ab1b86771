"""Server commands for OpsPilot CLI."""

import typer
from rich.table import Table

from opspilot.cli import console, server_app
from opspilot.cli.utils import get_manager


@server_app.command("add")
def add_server(
    name: str = typer.Argument(..., help="Display name of the server"),
    server_id: str | None = typer.Option(
        None,
        "--id",
        help="Server ID (generated if omitted); must match the key under 'servers' in config.yaml",
    ),
) -> None:
    """Register a managed server."""
    manager = get_manager()
    server = manager.add_server(name, server_id)
    console.print(f"[green]✓[/] Added server [cyan]{server.name}[/] ({server.id})")


@server_app.command("list")
def list_servers() -> None:
    """List managed servers."""
    manager = get_manager()
    servers = manager.list_servers()

    if not servers:
        console.print("[yellow]No servers registered.[/]")
        return

    table = Table(title="Servers")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    for server in servers:
        table.add_row(server.id, server.name)
    console.print(table)
