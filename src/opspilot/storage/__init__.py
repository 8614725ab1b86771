"""OpsPilot storage layer.

This module provides database storage for servers, tasks, task groups and
task group execution history using SQLite and SQLAlchemy.
"""

from .database import Database, init_database
from .models import (
    ActionKind,
    Base,
    ExecutionStatus,
    FailureMode,
    Server,
    Task,
    TaskGroup,
    TaskGroupExecution,
    TaskGroupMember,
    TaskRunStatus,
    utcnow,
)
from .repositories import (
    ServerRepository,
    TaskGroupExecutionRepository,
    TaskGroupRepository,
    TaskRepository,
)

__all__ = [
    "ActionKind",
    "Base",
    "Database",
    "ExecutionStatus",
    "FailureMode",
    "Server",
    "ServerRepository",
    "Task",
    "TaskGroup",
    "TaskGroupExecution",
    "TaskGroupExecutionRepository",
    "TaskGroupMember",
    "TaskGroupRepository",
    "TaskRepository",
    "TaskRunStatus",
    "init_database",
    "utcnow",
]
