"""Task commands for OpsPilot CLI."""

import asyncio
import json

import typer
from pydantic import ValidationError
from rich.table import Table

from opspilot.cli import console, task_app
from opspilot.cli.utils import format_datetime, format_status, get_manager
from opspilot.engine.errors import OpsPilotError
from opspilot.storage import ActionKind


def _parse_payload(payload: str | None, command: str | None) -> dict[str, object]:
    data: dict[str, object] = {}
    if payload:
        try:
            loaded = json.loads(payload)
        except json.JSONDecodeError as e:
            console.print(f"[red]Error:[/] Invalid JSON payload: {e}")
            raise typer.Exit(1) from e
        if not isinstance(loaded, dict):
            console.print("[red]Error:[/] Payload must be a JSON object")
            raise typer.Exit(1)
        data.update(loaded)
    if command:
        data["command"] = command
    return data


@task_app.command("add")
def add_task(
    name: str = typer.Argument(..., help="Task name"),
    server_id: str = typer.Option(..., "--server", "-s", help="Server the task acts on"),
    action: ActionKind = typer.Option(..., "--action", "-a", help="Action to perform"),
    cron: str = typer.Option(..., "--cron", "-c", help="Cron expression (5 fields, UTC)"),
    command: str | None = typer.Option(None, "--command", help="Console command (command tasks)"),
    payload: str | None = typer.Option(None, "--payload", help="Extra payload as JSON"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the task disabled"),
) -> None:
    """Create a scheduled task.

    Examples:
        opspilot task add nightly-backup -s <server-id> -a backup -c "0 4 * * *"
        opspilot task add warn -s <server-id> -a command -c "55 3 * * *" --command "say Restart soon"
    """
    manager = get_manager()
    try:
        task = manager.create_task(
            {
                "name": name,
                "server_id": server_id,
                "action": action,
                "cron_expression": cron,
                "payload": _parse_payload(payload, command),
                "enabled": not disabled,
            }
        )
    except (OpsPilotError, ValidationError) as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/] Created task [cyan]{task.name}[/] ({task.id})")


@task_app.command("list")
def list_tasks(
    server_id: str | None = typer.Option(None, "--server", "-s", help="Filter by server"),
) -> None:
    """List tasks with their last run."""
    manager = get_manager()
    tasks = manager.list_tasks(server_id)

    if not tasks:
        console.print("[yellow]No tasks found.[/]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Server")
    table.add_column("Action")
    table.add_column("Cron")
    table.add_column("Enabled")
    table.add_column("Last Run")
    table.add_column("Status")

    for task in tasks:
        table.add_row(
            task.id[:8],
            task.name,
            task.server.name if task.server else task.server_id,
            task.action.value,
            task.cron_expression,
            "yes" if task.enabled else "no",
            format_datetime(task.last_run),
            format_status(task.last_status.value if task.last_status else None),
        )

    console.print(table)


@task_app.command("update")
def update_task(
    task_id: str = typer.Argument(..., help="Task ID"),
    name: str | None = typer.Option(None, "--name", help="New name"),
    cron: str | None = typer.Option(None, "--cron", "-c", help="New cron expression"),
    command: str | None = typer.Option(None, "--command", help="New console command"),
) -> None:
    """Update a task and reschedule it."""
    manager = get_manager()
    changes: dict[str, object] = {}
    if name is not None:
        changes["name"] = name
    if cron is not None:
        changes["cron_expression"] = cron

    try:
        if command is not None:
            current = manager.get_task(task_id)
            changes["payload"] = {**(current.payload or {}), "command": command}
        task = manager.update_task(task_id, changes)
    except (OpsPilotError, ValidationError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/] Updated task [cyan]{task.name}[/]")


def _toggle(task_id: str, enabled: bool) -> None:
    manager = get_manager()
    try:
        task = manager.toggle_task(task_id, enabled)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    state = "Enabled" if enabled else "Disabled"
    console.print(f"[green]✓[/] {state} task [cyan]{task.name}[/]")


@task_app.command("enable")
def enable_task(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Enable a task's schedule."""
    _toggle(task_id, True)


@task_app.command("disable")
def disable_task(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Disable a task's schedule."""
    _toggle(task_id, False)


@task_app.command("delete")
def delete_task(
    task_id: str = typer.Argument(..., help="Task ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a task and remove it from every group."""
    if not yes:
        typer.confirm(f"Delete task {task_id}?", abort=True)

    manager = get_manager()
    try:
        manager.delete_task(task_id)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/] Deleted task {task_id}")


@task_app.command("run")
def run_task(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Run a task now."""
    manager = get_manager()
    try:
        outcome = asyncio.run(manager.run_task_now(task_id))
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    if outcome.ok:
        console.print("[green]✓[/] Task completed successfully")
    else:
        console.print(f"[red]✗[/] Task failed: {outcome.error}")
        raise typer.Exit(1)
