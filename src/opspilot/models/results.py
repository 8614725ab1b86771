"""Outcome models produced by task and task group runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

OutcomeStatus = Literal["success", "failed", "skipped"]

SKIPPED_DISABLED = "Task is disabled"
SKIPPED_PREVIOUS_FAILURE = "Skipped due to previous task failure"
FAILED_TASK_BUSY = "Task is already running outside this group"


class ActionOutcome(BaseModel):
    """Result of a single call into the action executor."""

    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> ActionOutcome:
        """Create a successful outcome."""
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> ActionOutcome:
        """Create a failed outcome."""
        return cls(ok=False, error=error)


class TaskOutcome(BaseModel):
    """Outcome of one member task inside a task group run."""

    task_id: str
    task_name: str
    server_id: str
    server_name: str | None = None
    status: OutcomeStatus
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None

    @property
    def duration_ms(self) -> int | None:
        """Wall time spent on the member, None if it never finished."""
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class ExecutionCounts(BaseModel):
    """Per-status member counts of a task group run."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: list[TaskOutcome]) -> ExecutionCounts:
        """Count outcomes by status."""
        return cls(
            total=len(outcomes),
            completed=sum(1 for o in outcomes if o.status == "success"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
            skipped=sum(1 for o in outcomes if o.status == "skipped"),
        )


def dump_outcomes(outcomes: list[TaskOutcome]) -> list[dict[str, Any]]:
    """Serialize outcomes for storage in a JSON column."""
    return [o.model_dump(mode="json") for o in outcomes]


def load_outcomes(data: list[dict[str, Any]] | None) -> list[TaskOutcome]:
    """Rebuild outcomes from their stored JSON form."""
    return [TaskOutcome.model_validate(item) for item in data or []]


__all__ = [
    "FAILED_TASK_BUSY",
    "SKIPPED_DISABLED",
    "SKIPPED_PREVIOUS_FAILURE",
    "ActionOutcome",
    "ExecutionCounts",
    "OutcomeStatus",
    "TaskOutcome",
    "dump_outcomes",
    "load_outcomes",
]
