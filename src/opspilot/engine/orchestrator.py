"""Task group orchestration for OpsPilot."""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from opspilot.models.results import (
    FAILED_TASK_BUSY,
    SKIPPED_DISABLED,
    SKIPPED_PREVIOUS_FAILURE,
    ActionOutcome,
    TaskOutcome,
)
from opspilot.storage import FailureMode, TaskGroupRepository, TaskRepository, utcnow

from .errors import (
    ExecutionInProgressError,
    ExecutionNotFoundError,
    GroupNotFoundError,
    TaskNotFoundError,
)
from .history import ExecutionRecorder, close_execution

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Generator
    from datetime import datetime

    from opspilot.storage import Database, Task, TaskGroup, TaskGroupExecution

    from .actions import ActionDispatcher

logger = logging.getLogger(__name__)


class EntityLocks:
    """Single-slot locks keyed by entity id.

    Runs come from timer worker threads and from manual requests, each on its
    own event loop, so the guard is a thread lock. Acquisition never waits: a
    second run for a busy id is rejected.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._active: set[str] = set()

    @contextmanager
    def hold(self, entity_id: str) -> Generator[None, None, None]:
        """Hold the slot for ``entity_id`` for the duration of the block.

        Raises:
            ExecutionInProgressError: If the slot is already held.
        """
        with self._guard:
            if entity_id in self._active:
                raise ExecutionInProgressError(entity_id)
            self._active.add(entity_id)
        try:
            yield
        finally:
            with self._guard:
                self._active.discard(entity_id)

    def is_running(self, entity_id: str) -> bool:
        """Check whether a run for an entity is in flight."""
        with self._guard:
            return entity_id in self._active


class GroupOrchestrator:
    """Runs task groups member by member and records the result.

    Also provides the single-task path used when a task fires on its own
    schedule. The orchestrator keeps no state across runs beyond the
    in-flight locks.
    """

    def __init__(
        self,
        db: Database,
        dispatcher: ActionDispatcher,
        recorder: ExecutionRecorder | None = None,
        locks: EntityLocks | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            db: Database with tasks, groups and execution history.
            dispatcher: Executes a single task's action.
            recorder: Execution history writer (created from db if omitted).
            locks: Per-entity run locks, shared with anything else that runs tasks.
            sleep: Coroutine used for the delay between tasks.
        """
        self._db = db
        self._dispatcher = dispatcher
        self._recorder = recorder or ExecutionRecorder(db)
        self._locks = locks or EntityLocks()
        self._sleep = sleep

    @property
    def dispatcher(self) -> ActionDispatcher:
        """Runs single task actions."""
        return self._dispatcher

    @property
    def recorder(self) -> ExecutionRecorder:
        """The execution history writer."""
        return self._recorder

    @property
    def locks(self) -> EntityLocks:
        """The per-entity run locks."""
        return self._locks

    def _load_group(self, group_id: str) -> TaskGroup:
        with self._db.session_scope() as session:
            group = TaskGroupRepository(session).get_with_tasks(group_id)
            if group is None:
                raise GroupNotFoundError(group_id)
            return group

    async def execute_group(
        self,
        group_id: str,
        trigger_type: str = "manual",
    ) -> TaskGroupExecution:
        """Execute a task group, running its tasks in order.

        Each member holds its task's run lock while it executes, so a task
        never runs twice at once. A member whose task is already running on
        its own schedule or manually is recorded as failed.

        Args:
            group_id: The group to run.
            trigger_type: What started the run (scheduled or manual).

        Returns:
            The finalized execution record.

        Raises:
            GroupNotFoundError: If the group does not exist (nothing recorded).
            ExecutionInProgressError: If the group is already running.
        """
        with self._locks.hold(group_id):
            group = self._load_group(group_id)
            members = sorted(group.members, key=lambda m: (m.sort_order, m.id))

            logger.info(f"Executing task group: {group.name} ({trigger_type})")
            execution = self._recorder.start(group.id, len(members), trigger_type)

            outcomes: list[TaskOutcome] = []
            failed = False
            last_index = len(members) - 1

            for index, member in enumerate(members):
                task = member.task

                if not task.enabled:
                    outcomes.append(self._skipped(task, SKIPPED_DISABLED))
                    continue

                if failed and group.failure_mode == FailureMode.STOP:
                    outcomes.append(self._skipped(task, SKIPPED_PREVIOUS_FAILURE))
                    continue

                outcome = await self._run_member(task)
                outcomes.append(outcome)
                if outcome.status == "failed":
                    failed = True

                if index < last_index and group.delay_between_tasks > 0:
                    logger.info(
                        f"Waiting {group.delay_between_tasks} seconds before next task..."
                    )
                    await self._sleep(group.delay_between_tasks)

            try:
                execution = self._recorder.finalize(execution.id, outcomes)
            except ExecutionNotFoundError:
                logger.warning(
                    f"Execution {execution.id} of task group {group.name} was deleted "
                    "during the run; its result is not stored"
                )
                close_execution(execution, outcomes)

        logger.info(
            f"Task group {group.name} completed: "
            f"{execution.tasks_completed}/{len(outcomes)} successful ({execution.status.value})"
        )
        return execution

    async def _run_member(self, task: Task) -> TaskOutcome:
        started_at = utcnow()
        try:
            with self._locks.hold(task.id):
                result = await self._dispatcher.execute(task)
                completed_at = utcnow()
                self._record_task_run(task, result, started_at)
        except ExecutionInProgressError:
            logger.warning(f"Task '{task.name}' is already running; failing its group step")
            result = ActionOutcome.failure(FAILED_TASK_BUSY)
            completed_at = utcnow()

        return TaskOutcome(
            task_id=task.id,
            task_name=task.name,
            server_id=task.server_id,
            server_name=task.server.name if task.server else None,
            status="success" if result.ok else "failed",
            error=result.error,
            started_at=started_at,
            completed_at=completed_at,
        )

    @staticmethod
    def _skipped(task: Task, reason: str) -> TaskOutcome:
        now = utcnow()
        return TaskOutcome(
            task_id=task.id,
            task_name=task.name,
            server_id=task.server_id,
            server_name=task.server.name if task.server else None,
            status="skipped",
            error=reason,
            started_at=now,
            completed_at=now,
        )

    def _record_task_run(self, task: Task, result: ActionOutcome, started_at: datetime) -> None:
        # A failed last-run mirror must not abort the group run
        try:
            self._recorder.record_task_run(task.id, result, started_at)
        except Exception:
            logger.exception(f"Could not record last run of task '{task.name}'")

    async def execute_task(self, task_id: str, trigger_type: str = "manual") -> ActionOutcome:
        """Execute a single task outside of any group.

        Args:
            task_id: The task to run.
            trigger_type: What started the run (scheduled or manual).

        Returns:
            The action outcome.

        Raises:
            TaskNotFoundError: If the task does not exist.
            ExecutionInProgressError: If the task is already running.
        """
        with self._locks.hold(task_id):
            with self._db.session_scope() as session:
                task = TaskRepository(session).get_by_id(task_id)
                if task is None:
                    raise TaskNotFoundError(task_id)

            logger.info(f"Executing task: {task.name} ({task.action.value}, {trigger_type})")
            started_at = utcnow()
            result = await self._dispatcher.execute(task)
            self._recorder.record_task_run(task.id, result, started_at)

        if result.ok:
            logger.info(f"Task {task.name} completed successfully")
        else:
            logger.error(f"Task {task.name} failed: {result.error}")
        return result
