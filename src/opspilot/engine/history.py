"""Durable execution history for task groups and tasks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opspilot.models.results import ActionOutcome, ExecutionCounts, TaskOutcome, dump_outcomes
from opspilot.storage import (
    ExecutionStatus,
    TaskGroupExecution,
    TaskGroupExecutionRepository,
    TaskGroupRepository,
    TaskRepository,
    TaskRunStatus,
    utcnow,
)

from .errors import ExecutionFinalizedError, ExecutionNotFoundError, GroupNotFoundError

if TYPE_CHECKING:
    from datetime import datetime

    from opspilot.storage import Database

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted: scheduler restarted before the run finished"


def compute_group_status(counts: ExecutionCounts) -> ExecutionStatus:
    """Derive the final status of a group run from its member counts.

    Any skipped member rules out ``success`` even when nothing failed: the run
    did not execute as configured.
    """
    if counts.failed == 0 and counts.skipped == 0:
        return ExecutionStatus.SUCCESS
    if counts.completed == 0:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIAL


def failure_summary(counts: ExecutionCounts) -> str | None:
    """Aggregate error message for a run, None when nothing failed."""
    if counts.failed == 0:
        return None
    return f"{counts.failed} task(s) failed"


def close_execution(execution: TaskGroupExecution, outcomes: list[TaskOutcome]) -> None:
    """Write the final status, counts and member outcomes onto a record."""
    counts = ExecutionCounts.from_outcomes(outcomes)
    execution.completed_at = utcnow()
    execution.status = compute_group_status(counts)
    execution.tasks_completed = counts.completed
    execution.tasks_failed = counts.failed
    execution.tasks_skipped = counts.skipped
    execution.error_message = failure_summary(counts)
    execution.task_results = dump_outcomes(outcomes)


class ExecutionRecorder:
    """Writes task group execution records and last-run summaries.

    An execution record is created in ``running`` state when a run starts and
    finalized exactly once when it ends.
    """

    def __init__(self, db: Database) -> None:
        """Initialize the recorder.

        Args:
            db: Database holding the execution history.
        """
        self._db = db

    def start(
        self,
        group_id: str,
        tasks_total: int,
        trigger_type: str = "manual",
    ) -> TaskGroupExecution:
        """Persist a ``running`` execution record for a group run.

        Args:
            group_id: The group being run.
            tasks_total: Number of members in the run.
            trigger_type: What started the run (scheduled or manual).

        Returns:
            The created execution record.
        """
        with self._db.session_scope() as session:
            repo = TaskGroupExecutionRepository(session)
            execution = TaskGroupExecution(
                group_id=group_id,
                trigger_type=trigger_type,
                status=ExecutionStatus.RUNNING,
                started_at=utcnow(),
                tasks_total=tasks_total,
                task_results=[],
            )
            repo.create(execution)

        logger.debug(f"Started execution {execution.id} for group {group_id}")
        return execution

    def finalize(self, execution_id: str, outcomes: list[TaskOutcome]) -> TaskGroupExecution:
        """Finalize a running execution and mirror it onto its group.

        Args:
            execution_id: The running execution to finalize.
            outcomes: Ordered per-member outcomes of the run.

        Returns:
            The finalized execution record.

        Raises:
            ExecutionFinalizedError: If the execution was already finalized.
            ExecutionNotFoundError: If the record was deleted during the run.
            SQLAlchemyError: If the store rejects the write.
        """
        try:
            with self._db.session_scope() as session:
                repo = TaskGroupExecutionRepository(session)
                execution = repo.get_by_id(execution_id)
                if execution is None:
                    raise ExecutionNotFoundError(execution_id)
                if execution.status != ExecutionStatus.RUNNING:
                    raise ExecutionFinalizedError(execution_id)

                close_execution(execution, outcomes)
                repo.update(execution)

                group = TaskGroupRepository(session).get_by_id(execution.group_id)
                if group is not None:
                    group.last_run = execution.completed_at
                    group.last_status = execution.status
                    group.last_error = execution.error_message
        except (ExecutionFinalizedError, ExecutionNotFoundError):
            raise
        except Exception:
            logger.exception(
                f"Failed to finalize execution {execution_id}; it will remain 'running' "
                "until reconciled"
            )
            raise

        return execution

    def record_task_run(
        self,
        task_id: str,
        outcome: ActionOutcome,
        run_time: datetime | None = None,
    ) -> None:
        """Store the last-run fields of a task.

        Args:
            task_id: The task that ran.
            outcome: Result of the action.
            run_time: When the run started (defaults to now).
        """
        with self._db.session_scope() as session:
            task = TaskRepository(session).get_by_id(task_id)
            if task is None:
                logger.warning(f"Task {task_id} disappeared before its run was recorded")
                return

            task.last_run = run_time or utcnow()
            task.last_status = TaskRunStatus.SUCCESS if outcome.ok else TaskRunStatus.FAILED
            task.last_error = outcome.error

    def reconcile_stale(self, reason: str = INTERRUPTED_MESSAGE) -> int:
        """Close executions left ``running`` by a process that died mid-run.

        Each stale record is marked ``failed`` with ``reason`` and its group's
        last-run fields are updated to match. Must only be called while no run
        is in flight, normally at startup before timers are armed.

        Returns:
            Number of executions reconciled.
        """
        with self._db.session_scope() as session:
            repo = TaskGroupExecutionRepository(session)
            group_repo = TaskGroupRepository(session)
            stale = repo.get_running()

            for execution in stale:
                now = utcnow()
                outcomes = repo.get_results(execution)
                counts = ExecutionCounts.from_outcomes(outcomes)

                execution.status = ExecutionStatus.FAILED
                execution.completed_at = now
                execution.tasks_completed = counts.completed
                execution.tasks_failed = counts.failed
                execution.tasks_skipped = counts.skipped
                execution.error_message = reason

                group = group_repo.get_by_id(execution.group_id)
                if group is not None and (group.last_run is None or group.last_run <= now):
                    group.last_run = now
                    group.last_status = ExecutionStatus.FAILED
                    group.last_error = reason

                logger.warning(f"Marked stale execution {execution.id} as failed: {reason}")

            session.flush()
            return len(stale)

    def list_executions(
        self,
        group_id: str,
        limit: int = 20,
        status: ExecutionStatus | None = None,
    ) -> list[TaskGroupExecution]:
        """Get the execution history of a group, newest first.

        Raises:
            GroupNotFoundError: If the group does not exist.
        """
        with self._db.session_scope() as session:
            if TaskGroupRepository(session).get_by_id(group_id) is None:
                raise GroupNotFoundError(group_id)
            return TaskGroupExecutionRepository(session).get_by_group(group_id, limit, status)

    def get_execution(self, execution_id: str) -> TaskGroupExecution | None:
        """Get one execution record."""
        with self._db.session_scope() as session:
            return TaskGroupExecutionRepository(session).get_by_id(execution_id)

    @staticmethod
    def outcomes_of(execution: TaskGroupExecution) -> list[TaskOutcome]:
        """Get the ordered per-member outcomes of an execution."""
        return TaskGroupExecutionRepository.get_results(execution)

    def cleanup_old(self, days: int = 30) -> int:
        """Delete finished executions older than ``days``.

        Returns:
            Number of executions deleted.
        """
        with self._db.session_scope() as session:
            count = TaskGroupExecutionRepository(session).cleanup_old(days)

        if count:
            logger.info(f"Removed {count} execution record(s) older than {days} days")
        return count
