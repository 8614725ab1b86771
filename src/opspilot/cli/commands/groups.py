"""Task group commands for OpsPilot CLI."""

import asyncio
import json
from typing import Any

import typer
from pydantic import ValidationError
from rich.table import Table

from opspilot.cli import app, console, group_app
from opspilot.cli.utils import format_datetime, format_status, get_manager
from opspilot.engine.errors import OpsPilotError
from opspilot.engine.history import ExecutionRecorder
from opspilot.storage import ExecutionStatus, FailureMode, TaskGroupExecution


@group_app.command("create")
def create_group(
    name: str = typer.Argument(..., help="Group name"),
    cron: str = typer.Option(..., "--cron", "-c", help="Cron expression (5 fields, UTC)"),
    task_ids: list[str] = typer.Option(
        [], "--task", "-t", help="Task ID to include, in run order (repeatable)"
    ),
    failure_mode: FailureMode = typer.Option(
        FailureMode.STOP, "--failure-mode", "-m", help="stop or continue after a failed task"
    ),
    delay: float = typer.Option(0, "--delay", "-d", help="Seconds to wait between tasks"),
    description: str | None = typer.Option(None, "--description", help="Description"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the group disabled"),
) -> None:
    """Create a task group.

    Examples:
        opspilot group create nightly -c "0 4 * * *" -t <stop-id> -t <backup-id> -t <start-id>
        opspilot group create maintenance -c "0 5 * * 0" -m continue -d 30
    """
    manager = get_manager()
    try:
        group = manager.create_group(
            {
                "name": name,
                "description": description,
                "cron_expression": cron,
                "failure_mode": failure_mode,
                "delay_between_tasks": delay,
                "enabled": not disabled,
                "task_ids": task_ids,
            }
        )
    except (OpsPilotError, ValidationError) as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/] Created task group [cyan]{group.name}[/] ({group.id})")
    if next_run := manager.registry.next_run(group.id):
        console.print(f"  Next run: {format_datetime(next_run)} UTC")


@group_app.command("list")
def list_groups() -> None:
    """List task groups."""
    manager = get_manager()
    groups = manager.list_groups()

    if not groups:
        console.print("[yellow]No task groups found.[/]")
        return

    table = Table(title="Task Groups")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Cron")
    table.add_column("Tasks", justify="right")
    table.add_column("On Failure")
    table.add_column("Delay", justify="right")
    table.add_column("Enabled")
    table.add_column("Last Run")
    table.add_column("Status")

    for group in groups:
        table.add_row(
            group.id[:8],
            group.name,
            group.cron_expression,
            str(len(group.members)),
            group.failure_mode.value,
            f"{group.delay_between_tasks:g}s",
            "yes" if group.enabled else "no",
            format_datetime(group.last_run),
            format_status(group.last_status.value if group.last_status else None),
        )

    console.print(table)


@group_app.command("show")
def show_group(group_id: str = typer.Argument(..., help="Group ID")) -> None:
    """Show a task group and its tasks in run order."""
    manager = get_manager()
    try:
        group = manager.get_group(group_id)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[bold]{group.name}[/] ({group.id})")
    if group.description:
        console.print(f"  {group.description}")
    console.print(f"  Schedule:     {group.cron_expression} (UTC)")
    console.print(f"  Failure mode: {group.failure_mode.value}")
    console.print(f"  Delay:        {group.delay_between_tasks:g}s")
    console.print(f"  Enabled:      {'yes' if group.enabled else 'no'}")
    console.print(f"  Last run:     {format_datetime(group.last_run)}")
    console.print(
        f"  Last status:  {format_status(group.last_status.value if group.last_status else None)}"
    )
    if group.last_error:
        console.print(f"  Last error:   [red]{group.last_error}[/]")

    table = Table(title="Tasks")
    table.add_column("#", justify="right")
    table.add_column("Task ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Server")
    table.add_column("Action")
    table.add_column("Enabled")
    for member in group.members:
        task = member.task
        table.add_row(
            str(member.sort_order),
            task.id,
            task.name,
            task.server.name if task.server else task.server_id,
            task.action.value,
            "yes" if task.enabled else "no",
        )
    console.print(table)


@group_app.command("add-task")
def add_task(
    group_id: str = typer.Argument(..., help="Group ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
    position: int | None = typer.Option(None, "--position", "-p", help="Sort position"),
) -> None:
    """Add a task to a group (appended unless a position is given)."""
    manager = get_manager()
    try:
        member = manager.add_task_to_group(group_id, task_id, position)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/] Added task at position {member.sort_order}")


@group_app.command("remove-task")
def remove_task(
    group_id: str = typer.Argument(..., help="Group ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    """Remove a task from a group."""
    manager = get_manager()
    try:
        manager.remove_task_from_group(group_id, task_id)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print("[green]✓[/] Removed task from group")


@group_app.command("reorder")
def reorder(
    group_id: str = typer.Argument(..., help="Group ID"),
    task_ids: list[str] = typer.Argument(..., help="Every task ID of the group, in the new order"),
) -> None:
    """Set the run order of a group's tasks."""
    manager = get_manager()
    try:
        manager.reorder_group(group_id, task_ids)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print("[green]✓[/] Reordered tasks")


def _toggle(group_id: str, enabled: bool) -> None:
    manager = get_manager()
    try:
        group = manager.toggle_group(group_id, enabled)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    state = "Enabled" if enabled else "Disabled"
    console.print(f"[green]✓[/] {state} task group [cyan]{group.name}[/]")


@group_app.command("enable")
def enable_group(group_id: str = typer.Argument(..., help="Group ID")) -> None:
    """Enable a task group's schedule."""
    _toggle(group_id, True)


@group_app.command("disable")
def disable_group(group_id: str = typer.Argument(..., help="Group ID")) -> None:
    """Disable a task group's schedule."""
    _toggle(group_id, False)


@group_app.command("delete")
def delete_group(
    group_id: str = typer.Argument(..., help="Group ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a task group with its execution history."""
    if not yes:
        typer.confirm(f"Delete task group {group_id}?", abort=True)

    manager = get_manager()
    try:
        manager.delete_group(group_id)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/] Deleted task group {group_id}")


@group_app.command("run")
def run_group(group_id: str = typer.Argument(..., help="Group ID")) -> None:
    """Run a task group now and show the result."""
    manager = get_manager()
    try:
        execution = asyncio.run(manager.run_group_now(group_id))
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    _print_execution(execution)
    if execution.status != ExecutionStatus.SUCCESS:
        raise typer.Exit(1)


@group_app.command("history")
def history(
    group_id: str = typer.Argument(..., help="Group ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of executions"),
    status: str | None = typer.Option(
        None, "--status", "-s", help="Filter by status (running, success, failed, partial)"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Show the execution history of a task group.

    Examples:
        opspilot group history <group-id>
        opspilot group history <group-id> --status failed
        opspilot group history <group-id> --json
    """
    status_filter: ExecutionStatus | None = None
    if status:
        try:
            status_filter = ExecutionStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in ExecutionStatus)
            console.print(f"[red]Error:[/] Invalid status '{status}'")
            console.print(f"Valid values: {valid}")
            raise typer.Exit(1) from None

    manager = get_manager()
    try:
        executions = manager.group_history(group_id, limit, status_filter)
    except OpsPilotError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1) from e

    if json_output:
        console.print_json(json.dumps([_execution_to_dict(e) for e in executions]))
        return

    if not executions:
        console.print("[yellow]No executions found.[/]")
        return

    table = Table(title="Execution History")
    table.add_column("ID", style="dim")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("OK/Failed/Skipped", justify="right")
    table.add_column("Error")

    for execution in executions:
        duration = execution.duration_ms
        table.add_row(
            execution.id[:8],
            execution.trigger_type,
            format_status(execution.status.value),
            format_datetime(execution.started_at),
            f"{duration / 1000:.1f}s" if duration is not None else "-",
            f"{execution.tasks_completed}/{execution.tasks_failed}/{execution.tasks_skipped}",
            execution.error_message or "",
        )

    console.print(table)


@app.command()
def cleanup(
    days: int | None = typer.Option(
        None,
        "--days",
        help="Keep executions newer than this (defaults to the configured retention)",
    ),
) -> None:
    """Delete old task group executions."""
    from opspilot.config import load_settings

    manager = get_manager()
    retention = days if days is not None else load_settings().history_retention_days
    count = manager.cleanup_history(retention)
    console.print(f"[green]✓[/] Removed {count} execution(s) older than {retention} days")


def _execution_to_dict(execution: TaskGroupExecution) -> dict[str, Any]:
    return {
        "id": execution.id,
        "group_id": execution.group_id,
        "trigger_type": execution.trigger_type,
        "status": execution.status.value,
        "started_at": execution.started_at.isoformat(),
        "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
        "tasks_total": execution.tasks_total,
        "tasks_completed": execution.tasks_completed,
        "tasks_failed": execution.tasks_failed,
        "tasks_skipped": execution.tasks_skipped,
        "error_message": execution.error_message,
        "task_results": [
            o.model_dump(mode="json") for o in ExecutionRecorder.outcomes_of(execution)
        ],
    }


def _print_execution(execution: TaskGroupExecution) -> None:
    console.print(
        f"Execution {execution.id}: {format_status(execution.status.value)} "
        f"({execution.tasks_completed}/{execution.tasks_total} successful)"
    )
    for outcome in ExecutionRecorder.outcomes_of(execution):
        line = f"  {format_status(outcome.status)} {outcome.task_name}"
        if outcome.error:
            line += f" [dim]- {outcome.error}[/]"
        console.print(line)
