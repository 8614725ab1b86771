"""Error classification for the OpsPilot scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification of errors for handling decisions."""

    VALIDATION = "validation"  # Rejected before any state is created
    NOT_FOUND = "not_found"  # Referenced entity does not exist
    CONFLICT = "conflict"  # Clashes with current state (running, duplicate)
    EXECUTION = "execution"  # An action failed against a server
    PERSISTENCE = "persistence"  # The store refused a write


@dataclass
class OpsPilotError(Exception):
    """Base error with classification and context."""

    message: str
    category: ErrorCategory
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def __post_init__(self) -> None:
        super().__init__(self.message)


@dataclass
class InvalidScheduleError(OpsPilotError):
    """A cron expression could not be validated."""

    def __init__(self, expression: str, reason: str | None = None) -> None:
        message = f"Invalid cron expression: {expression!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            context={"expression": expression},
        )


@dataclass
class TaskNotFoundError(OpsPilotError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(
            message=f"Task {task_id} not found",
            category=ErrorCategory.NOT_FOUND,
            context={"task_id": task_id},
        )


@dataclass
class GroupNotFoundError(OpsPilotError):
    """Raised when a task group id does not exist."""

    def __init__(self, group_id: str) -> None:
        super().__init__(
            message=f"Task group {group_id} not found",
            category=ErrorCategory.NOT_FOUND,
            context={"group_id": group_id},
        )


@dataclass
class ServerNotFoundError(OpsPilotError):
    """Raised when a server id does not exist."""

    def __init__(self, server_id: str) -> None:
        super().__init__(
            message=f"Server {server_id} not found",
            category=ErrorCategory.NOT_FOUND,
            context={"server_id": server_id},
        )


@dataclass
class ExecutionInProgressError(OpsPilotError):
    """Raised when a run is requested for an entity that is already running."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            message=f"An execution for {entity_id} is already in progress",
            category=ErrorCategory.CONFLICT,
            context={"entity_id": entity_id},
        )


@dataclass
class DuplicateMemberError(OpsPilotError):
    """Raised when a task is added to a group it already belongs to."""

    def __init__(self, group_id: str, task_id: str) -> None:
        super().__init__(
            message=f"Task {task_id} is already a member of group {group_id}",
            category=ErrorCategory.CONFLICT,
            context={"group_id": group_id, "task_id": task_id},
        )


@dataclass
class MembershipError(OpsPilotError):
    """Invalid membership change (unknown member, bad reorder list)."""

    def __init__(self, message: str, group_id: str) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            context={"group_id": group_id},
        )


@dataclass
class ExecutionNotFoundError(OpsPilotError):
    """Raised when an execution record no longer exists."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            message=f"Execution {execution_id} not found",
            category=ErrorCategory.NOT_FOUND,
            context={"execution_id": execution_id},
        )


@dataclass
class ExecutionFinalizedError(OpsPilotError):
    """Raised when an execution record is written after being finalized."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            message=f"Execution {execution_id} is already finalized",
            category=ErrorCategory.PERSISTENCE,
            context={"execution_id": execution_id},
        )


@dataclass
class ActionError(OpsPilotError):
    """An action against a managed server failed."""

    def __init__(self, message: str, server_id: str | None = None) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.EXECUTION,
            context={"server_id": server_id} if server_id else {},
        )
