"""OpsPilot data models."""

from .results import (
    FAILED_TASK_BUSY,
    SKIPPED_DISABLED,
    SKIPPED_PREVIOUS_FAILURE,
    ActionOutcome,
    ExecutionCounts,
    OutcomeStatus,
    TaskOutcome,
    dump_outcomes,
    load_outcomes,
)
from .tasks import TaskGroupSpec, TaskGroupUpdate, TaskSpec, TaskUpdate

__all__ = [
    "FAILED_TASK_BUSY",
    "SKIPPED_DISABLED",
    "SKIPPED_PREVIOUS_FAILURE",
    "ActionOutcome",
    "ExecutionCounts",
    "OutcomeStatus",
    "TaskGroupSpec",
    "TaskGroupUpdate",
    "TaskOutcome",
    "TaskSpec",
    "TaskUpdate",
    "dump_outcomes",
    "load_outcomes",
]
