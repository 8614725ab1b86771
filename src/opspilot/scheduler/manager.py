"""High-level automation management for OpsPilot.

Keeps stored tasks and task groups and their live timers consistent: every
create, update, toggle and delete goes through here.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from opspilot.engine.actions import ActionDispatcher
from opspilot.engine.controllers import ShellServerController
from opspilot.engine.errors import (
    DuplicateMemberError,
    GroupNotFoundError,
    MembershipError,
    ServerNotFoundError,
    TaskNotFoundError,
)
from opspilot.engine.history import ExecutionRecorder
from opspilot.engine.orchestrator import GroupOrchestrator
from opspilot.models import TaskGroupSpec, TaskGroupUpdate, TaskSpec, TaskUpdate
from opspilot.storage import (
    ActionKind,
    Database,
    Server,
    ServerRepository,
    Task,
    TaskGroup,
    TaskGroupMember,
    TaskGroupRepository,
    TaskRepository,
)

from .registry import ScheduleRegistry, job_id_for
from .service import SchedulerService
from .triggers import parse_cron_expression

if TYPE_CHECKING:
    from opspilot.config import SchedulerSettings
    from opspilot.engine.actions import ServerController
    from opspilot.models import ActionOutcome
    from opspilot.storage import ExecutionStatus, TaskGroupExecution

logger = logging.getLogger(__name__)


class AutomationManager:
    """Facade over the store, the schedule registry and the orchestrator."""

    def __init__(
        self,
        db: Database,
        registry: ScheduleRegistry,
        orchestrator: GroupOrchestrator,
        reconcile_on_start: bool = True,
    ) -> None:
        """Initialize the manager.

        Args:
            db: Store holding servers, tasks, groups and history.
            registry: Live timer registry.
            orchestrator: Runs tasks and groups.
            reconcile_on_start: Close stale ``running`` executions in start().
        """
        self._db = db
        self._registry = registry
        self._orchestrator = orchestrator
        self._reconcile_on_start = reconcile_on_start

    @classmethod
    def from_settings(
        cls,
        settings: SchedulerSettings,
        controller: ServerController | None = None,
        db: Database | None = None,
    ) -> AutomationManager:
        """Wire a manager from configuration.

        Args:
            settings: Scheduler settings.
            controller: Server controller (defaults to the shell controller
                built from ``settings.servers``).
            db: Database to use instead of ``settings.database_path``.
        """
        if db is None:
            db = Database(settings.database_path)
            db.create_tables()

        controller = controller or ShellServerController(
            settings.servers, timeout=settings.action_timeout
        )
        dispatcher = ActionDispatcher(controller, timeout=settings.action_timeout)
        orchestrator = GroupOrchestrator(db, dispatcher)
        scheduler = SchedulerService(
            max_workers=settings.max_workers,
            misfire_grace_time=settings.misfire_grace_time,
        )
        registry = ScheduleRegistry(
            db, scheduler, orchestrator, sync_interval=settings.sync_interval
        )
        return cls(db, registry, orchestrator, settings.reconcile_on_start)

    @property
    def registry(self) -> ScheduleRegistry:
        """The live timer registry."""
        return self._registry

    @property
    def orchestrator(self) -> GroupOrchestrator:
        """The task and group runner."""
        return self._orchestrator

    @property
    def recorder(self) -> ExecutionRecorder:
        """The execution history writer."""
        return self._orchestrator.recorder

    # Lifecycle

    def start(self) -> int:
        """Reconcile history, load schedules and start firing timers.

        Returns:
            Number of schedules registered.
        """
        if self._reconcile_on_start:
            stale = self.recorder.reconcile_stale()
            if stale:
                logger.warning(f"Reconciled {stale} interrupted execution(s)")

        count = self._registry.load()
        self._registry.start()
        return count

    def shutdown(self, wait: bool = False) -> None:
        """Cancel every timer. In-flight runs are detached unless ``wait``."""
        self._registry.shutdown(wait=wait)

    # Servers

    def add_server(self, name: str, server_id: str | None = None) -> Server:
        """Register a managed server."""
        with self._db.session_scope() as session:
            server = Server(name=name)
            if server_id:
                server.id = server_id
            ServerRepository(session).create(server)

        logger.info(f"Added server: {name} ({server.id})")
        return server

    def list_servers(self) -> list[Server]:
        """Get all managed servers."""
        with self._db.session_scope() as session:
            return ServerRepository(session).get_all()

    # Tasks

    def create_task(self, spec: TaskSpec | dict[str, Any]) -> Task:
        """Create a task and schedule it when enabled.

        Raises:
            InvalidScheduleError: If the cron expression is invalid.
            ValidationError: If another field of the input is invalid.
            ServerNotFoundError: If the server does not exist.
        """
        if not isinstance(spec, TaskSpec):
            spec = TaskSpec.model_validate(spec)
        parse_cron_expression(spec.cron_expression)

        with self._db.session_scope() as session:
            if ServerRepository(session).get_by_id(spec.server_id) is None:
                raise ServerNotFoundError(spec.server_id)

            task = Task(
                server_id=spec.server_id,
                name=spec.name,
                action=spec.action,
                payload=spec.payload,
                cron_expression=spec.cron_expression,
                enabled=spec.enabled,
            )
            TaskRepository(session).create(task)

        if task.enabled:
            self._registry.register(task)

        logger.info(f"Created task: {task.name}")
        return task

    def update_task(self, task_id: str, update: TaskUpdate | dict[str, Any]) -> Task:
        """Update a task and re-sync its timer.

        Raises:
            InvalidScheduleError: If the new cron expression is invalid.
            ValidationError: If another field of the input is invalid.
            TaskNotFoundError: If the task does not exist.
        """
        if not isinstance(update, TaskUpdate):
            update = TaskUpdate.model_validate(update)
        if update.cron_expression is not None:
            parse_cron_expression(update.cron_expression)

        changes = update.model_dump(exclude_unset=True, exclude_none=True)

        with self._db.session_scope() as session:
            repo = TaskRepository(session)
            task = repo.get_by_id(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            for key, value in changes.items():
                setattr(task, key, value)

            if task.action == ActionKind.COMMAND and not (task.payload or {}).get("command"):
                msg = "Command tasks require a 'command' entry in the payload"
                raise ValueError(msg)

            repo.update(task)

        self._sync_schedule(task)
        return task

    def toggle_task(self, task_id: str, enabled: bool) -> Task:
        """Enable or disable a task."""
        return self.update_task(task_id, TaskUpdate(enabled=enabled))

    def delete_task(self, task_id: str) -> None:
        """Cancel a task's timer, then delete it and its group memberships.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        self._registry.unregister(task_id)

        with self._db.session_scope() as session:
            if not TaskRepository(session).delete(task_id):
                raise TaskNotFoundError(task_id)

        logger.info(f"Deleted task: {task_id}")

    def get_task(self, task_id: str) -> Task:
        """Get a task.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        with self._db.session_scope() as session:
            task = TaskRepository(session).get_by_id(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return task

    def list_tasks(self, server_id: str | None = None) -> list[Task]:
        """Get all tasks, optionally for one server."""
        with self._db.session_scope() as session:
            return TaskRepository(session).get_all(server_id)

    async def run_task_now(self, task_id: str) -> ActionOutcome:
        """Run a task immediately, outside its schedule."""
        return await self._orchestrator.execute_task(task_id, trigger_type="manual")

    # Task groups

    def create_group(self, spec: TaskGroupSpec | dict[str, Any]) -> TaskGroup:
        """Create a task group, add its initial tasks and schedule it when enabled.

        Raises:
            InvalidScheduleError: If the cron expression is invalid.
            ValidationError: If another field of the input is invalid.
            TaskNotFoundError: If one of ``task_ids`` does not exist.
        """
        if not isinstance(spec, TaskGroupSpec):
            spec = TaskGroupSpec.model_validate(spec)
        parse_cron_expression(spec.cron_expression)

        with self._db.session_scope() as session:
            task_repo = TaskRepository(session)
            group_repo = TaskGroupRepository(session)

            group = TaskGroup(
                name=spec.name,
                description=spec.description,
                cron_expression=spec.cron_expression,
                failure_mode=spec.failure_mode,
                delay_between_tasks=spec.delay_between_tasks,
                enabled=spec.enabled,
            )
            group_repo.create(group)

            for position, task_id in enumerate(spec.task_ids):
                if task_repo.get_by_id(task_id) is None:
                    raise TaskNotFoundError(task_id)
                group_repo.add_member(
                    TaskGroupMember(group_id=group.id, task_id=task_id, sort_order=position)
                )

        if group.enabled:
            self._registry.register(group)

        logger.info(f"Created task group: {group.name}")
        return group

    def update_group(self, group_id: str, update: TaskGroupUpdate | dict[str, Any]) -> TaskGroup:
        """Update a task group and re-sync its timer.

        Raises:
            InvalidScheduleError: If the new cron expression is invalid.
            ValidationError: If another field of the input is invalid.
            GroupNotFoundError: If the group does not exist.
        """
        if not isinstance(update, TaskGroupUpdate):
            update = TaskGroupUpdate.model_validate(update)
        if update.cron_expression is not None:
            parse_cron_expression(update.cron_expression)

        changes = update.model_dump(exclude_unset=True)
        # description may be cleared explicitly, everything else needs a value
        changes = {k: v for k, v in changes.items() if v is not None or k == "description"}

        with self._db.session_scope() as session:
            repo = TaskGroupRepository(session)
            group = repo.get_by_id(group_id)
            if group is None:
                raise GroupNotFoundError(group_id)

            for key, value in changes.items():
                setattr(group, key, value)
            repo.update(group)

        self._sync_schedule(group)
        return group

    def toggle_group(self, group_id: str, enabled: bool) -> TaskGroup:
        """Enable or disable a task group."""
        return self.update_group(group_id, TaskGroupUpdate(enabled=enabled))

    def delete_group(self, group_id: str) -> None:
        """Cancel a group's timer, then delete it with its members and history.

        Raises:
            GroupNotFoundError: If the group does not exist.
        """
        self._registry.unregister(group_id)

        with self._db.session_scope() as session:
            if not TaskGroupRepository(session).delete(group_id):
                raise GroupNotFoundError(group_id)

        logger.info(f"Deleted task group: {group_id}")

    def get_group(self, group_id: str) -> TaskGroup:
        """Get a task group with its ordered members.

        Raises:
            GroupNotFoundError: If the group does not exist.
        """
        with self._db.session_scope() as session:
            group = TaskGroupRepository(session).get_with_tasks(group_id)
            if group is None:
                raise GroupNotFoundError(group_id)
            return group

    def list_groups(self) -> list[TaskGroup]:
        """Get all task groups with their members."""
        with self._db.session_scope() as session:
            return TaskGroupRepository(session).get_all()

    async def run_group_now(self, group_id: str) -> TaskGroupExecution:
        """Run a task group immediately, outside its schedule."""
        return await self._orchestrator.execute_group(group_id, trigger_type="manual")

    def group_history(
        self,
        group_id: str,
        limit: int = 20,
        status: ExecutionStatus | None = None,
    ) -> list[TaskGroupExecution]:
        """Get the execution history of a group, newest first."""
        return self.recorder.list_executions(group_id, limit, status)

    def cleanup_history(self, days: int = 30) -> int:
        """Delete finished executions older than ``days``."""
        return self.recorder.cleanup_old(days)

    # Membership. These never touch timers; runs always read membership fresh.

    def add_task_to_group(
        self,
        group_id: str,
        task_id: str,
        sort_order: int | None = None,
    ) -> TaskGroupMember:
        """Add a task to a group, appending it when no position is given.

        Raises:
            GroupNotFoundError: If the group does not exist.
            TaskNotFoundError: If the task does not exist.
            DuplicateMemberError: If the task is already in the group.
        """
        try:
            with self._db.session_scope() as session:
                group_repo = TaskGroupRepository(session)
                if group_repo.get_by_id(group_id) is None:
                    raise GroupNotFoundError(group_id)
                if TaskRepository(session).get_by_id(task_id) is None:
                    raise TaskNotFoundError(task_id)
                if group_repo.get_member(group_id, task_id) is not None:
                    raise DuplicateMemberError(group_id, task_id)

                if sort_order is None:
                    sort_order = group_repo.next_sort_order(group_id)

                member = group_repo.add_member(
                    TaskGroupMember(group_id=group_id, task_id=task_id, sort_order=sort_order)
                )
        except IntegrityError as e:
            raise DuplicateMemberError(group_id, task_id) from e

        logger.info(f"Added task {task_id} to group {group_id} at position {sort_order}")
        return member

    def remove_task_from_group(self, group_id: str, task_id: str) -> None:
        """Remove a task from a group.

        Raises:
            MembershipError: If the task is not a member of the group.
        """
        with self._db.session_scope() as session:
            if not TaskGroupRepository(session).remove_member(group_id, task_id):
                raise MembershipError(
                    f"Task {task_id} is not a member of group {group_id}", group_id
                )

        logger.info(f"Removed task {task_id} from group {group_id}")

    def reorder_group(self, group_id: str, task_ids: list[str]) -> None:
        """Set the execution order of a group's tasks.

        Args:
            group_id: The group to reorder.
            task_ids: Every current member's task ID, in the new order.

        Raises:
            GroupNotFoundError: If the group does not exist.
            MembershipError: If ``task_ids`` is not exactly the current members.
        """
        with self._db.session_scope() as session:
            repo = TaskGroupRepository(session)
            if repo.get_by_id(group_id) is None:
                raise GroupNotFoundError(group_id)

            members = {m.task_id: m for m in repo.get_members(group_id)}
            if len(task_ids) != len(set(task_ids)) or set(task_ids) != set(members):
                raise MembershipError(
                    "Reorder must list every task of the group exactly once", group_id
                )

            for position, task_id in enumerate(task_ids):
                members[task_id].sort_order = position
            session.flush()

        logger.info(f"Reordered tasks in group {group_id}")

    # Status

    def status(self) -> list[dict[str, Any]]:
        """Summarize every task and group with its timer state."""
        rows: list[dict[str, Any]] = []
        with self._db.session_scope() as session:
            tasks = TaskRepository(session).get_all()
            groups = TaskGroupRepository(session).get_all()

        for entity in [*tasks, *groups]:
            rows.append(
                {
                    "id": entity.id,
                    "kind": job_id_for(entity).split(":", 1)[0],
                    "name": entity.name,
                    "enabled": entity.enabled,
                    "cron": entity.cron_expression,
                    "scheduled": self._registry.is_registered(entity.id),
                    "next_run": self._registry.next_run(entity.id),
                    "last_run": entity.last_run,
                    "last_status": entity.last_status.value if entity.last_status else None,
                    "last_error": entity.last_error,
                }
            )
        return rows

    def _sync_schedule(self, entity: Task | TaskGroup) -> None:
        if entity.enabled:
            self._registry.register(entity)
        else:
            self._registry.unregister(entity.id)
