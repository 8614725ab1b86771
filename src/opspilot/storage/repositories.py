"""Repository classes for OpsPilot storage operations."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from opspilot.models.results import TaskOutcome, dump_outcomes, load_outcomes

from .models import (
    ExecutionStatus,
    Server,
    Task,
    TaskGroup,
    TaskGroupExecution,
    TaskGroupMember,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


class ServerRepository:
    """Repository for Server records."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, server: Server) -> Server:
        """Create a new server record."""
        self._session.add(server)
        self._session.flush()
        return server

    def get_by_id(self, server_id: str) -> Server | None:
        """Get a server by its ID."""
        return self._session.get(Server, server_id)

    def get_all(self) -> list[Server]:
        """Get all servers ordered by name."""
        stmt = select(Server).order_by(Server.name)
        return list(self._session.scalars(stmt))


class TaskRepository:
    """Repository for Task records."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository.

        Args:
            session: SQLAlchemy session for database operations.
        """
        self._session = session

    def create(self, task: Task) -> Task:
        """Create a new task record."""
        self._session.add(task)
        self._session.flush()
        return task

    def update(self, task: Task) -> Task:
        """Flush changes to a task attached to the session."""
        self._session.flush()
        return task

    def get_by_id(self, task_id: str) -> Task | None:
        """Get a task, with its server loaded, by ID."""
        stmt = select(Task).options(selectinload(Task.server)).where(Task.id == task_id)
        return self._session.scalar(stmt)

    def get_enabled(self) -> list[Task]:
        """Get all enabled tasks."""
        stmt = select(Task).where(Task.enabled.is_(True)).order_by(Task.name)
        return list(self._session.scalars(stmt))

    def get_all(self, server_id: str | None = None) -> list[Task]:
        """Get all tasks, optionally for one server."""
        stmt = select(Task).options(selectinload(Task.server)).order_by(Task.name)
        if server_id is not None:
            stmt = stmt.where(Task.server_id == server_id)
        return list(self._session.scalars(stmt))

    def delete(self, task_id: str) -> bool:
        """Delete a task and its group memberships.

        Returns:
            True if deleted, False if not found.
        """
        task = self._session.get(Task, task_id)
        if task is None:
            return False

        self._session.delete(task)
        self._session.flush()
        return True


class TaskGroupRepository:
    """Repository for TaskGroup records and their membership."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository.

        Args:
            session: SQLAlchemy session for database operations.
        """
        self._session = session

    def create(self, group: TaskGroup) -> TaskGroup:
        """Create a new task group record."""
        self._session.add(group)
        self._session.flush()
        return group

    def update(self, group: TaskGroup) -> TaskGroup:
        """Flush changes to a group attached to the session."""
        self._session.flush()
        return group

    def get_by_id(self, group_id: str) -> TaskGroup | None:
        """Get a task group without its membership."""
        return self._session.get(TaskGroup, group_id)

    def get_with_tasks(self, group_id: str) -> TaskGroup | None:
        """Get a task group with its ordered members, their tasks and servers.

        Always queries the store; membership is never cached between runs.
        """
        stmt = (
            select(TaskGroup)
            .options(
                selectinload(TaskGroup.members)
                .selectinload(TaskGroupMember.task)
                .selectinload(Task.server)
            )
            .where(TaskGroup.id == group_id)
            .execution_options(populate_existing=True)
        )
        return self._session.scalar(stmt)

    def get_enabled(self) -> list[TaskGroup]:
        """Get all enabled task groups."""
        stmt = select(TaskGroup).where(TaskGroup.enabled.is_(True)).order_by(TaskGroup.name)
        return list(self._session.scalars(stmt))

    def get_all(self) -> list[TaskGroup]:
        """Get all task groups with their members, ordered by name."""
        stmt = (
            select(TaskGroup)
            .options(
                selectinload(TaskGroup.members)
                .selectinload(TaskGroupMember.task)
                .selectinload(Task.server)
            )
            .order_by(TaskGroup.name)
        )
        return list(self._session.scalars(stmt))

    def delete(self, group_id: str) -> bool:
        """Delete a group with its membership and execution history.

        Returns:
            True if deleted, False if not found.
        """
        group = self._session.get(TaskGroup, group_id)
        if group is None:
            return False

        self._session.delete(group)
        self._session.flush()
        return True

    def get_member(self, group_id: str, task_id: str) -> TaskGroupMember | None:
        """Get the membership row of a task in a group."""
        stmt = select(TaskGroupMember).where(
            TaskGroupMember.group_id == group_id,
            TaskGroupMember.task_id == task_id,
        )
        return self._session.scalar(stmt)

    def get_members(self, group_id: str) -> list[TaskGroupMember]:
        """Get the members of a group in execution order."""
        stmt = (
            select(TaskGroupMember)
            .where(TaskGroupMember.group_id == group_id)
            .order_by(TaskGroupMember.sort_order, TaskGroupMember.id)
        )
        return list(self._session.scalars(stmt))

    def next_sort_order(self, group_id: str) -> int:
        """Position one past the current last member (0 for an empty group)."""
        stmt = select(func.max(TaskGroupMember.sort_order)).where(
            TaskGroupMember.group_id == group_id
        )
        current = self._session.scalar(stmt)
        return 0 if current is None else current + 1

    def add_member(self, member: TaskGroupMember) -> TaskGroupMember:
        """Add a membership row."""
        self._session.add(member)
        self._session.flush()
        return member

    def remove_member(self, group_id: str, task_id: str) -> bool:
        """Remove a task from a group.

        Returns:
            True if removed, False if the task was not a member.
        """
        member = self.get_member(group_id, task_id)
        if member is None:
            return False

        self._session.delete(member)
        self._session.flush()
        return True


class TaskGroupExecutionRepository:
    """Repository for TaskGroupExecution records."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository.

        Args:
            session: SQLAlchemy session for database operations.
        """
        self._session = session

    def create(self, execution: TaskGroupExecution) -> TaskGroupExecution:
        """Create a new execution record."""
        self._session.add(execution)
        self._session.flush()
        return execution

    def update(self, execution: TaskGroupExecution) -> TaskGroupExecution:
        """Flush changes to an execution attached to the session."""
        self._session.flush()
        return execution

    def get_by_id(self, execution_id: str) -> TaskGroupExecution | None:
        """Get an execution by its ID."""
        return self._session.get(TaskGroupExecution, execution_id)

    def get_by_group(
        self,
        group_id: str,
        limit: int = 20,
        status: ExecutionStatus | None = None,
    ) -> list[TaskGroupExecution]:
        """Get executions for a group, newest first."""
        stmt = select(TaskGroupExecution).where(TaskGroupExecution.group_id == group_id)
        if status is not None:
            stmt = stmt.where(TaskGroupExecution.status == status)
        stmt = stmt.order_by(TaskGroupExecution.started_at.desc()).limit(limit)
        return list(self._session.scalars(stmt))

    def get_running(self) -> list[TaskGroupExecution]:
        """Get every execution still marked as running."""
        stmt = select(TaskGroupExecution).where(
            TaskGroupExecution.status == ExecutionStatus.RUNNING
        )
        return list(self._session.scalars(stmt))

    def set_results(self, execution: TaskGroupExecution, outcomes: list[TaskOutcome]) -> None:
        """Store the ordered per-member outcomes of an execution."""
        execution.task_results = dump_outcomes(outcomes)

    @staticmethod
    def get_results(execution: TaskGroupExecution) -> list[TaskOutcome]:
        """Read the ordered per-member outcomes of an execution."""
        return load_outcomes(execution.task_results)

    def cleanup_old(self, days: int = 30) -> int:
        """Delete finished executions older than a number of days.

        Returns:
            Number of executions deleted.
        """
        cutoff = utcnow() - timedelta(days=days)
        stmt = select(TaskGroupExecution).where(
            TaskGroupExecution.started_at < cutoff,
            TaskGroupExecution.status != ExecutionStatus.RUNNING,
        )
        old_executions = list(self._session.scalars(stmt))

        for execution in old_executions:
            self._session.delete(execution)

        self._session.flush()
        return len(old_executions)
