"""OpsPilot execution engine."""

from .actions import (
    ActionDispatcher,
    ActionHandler,
    BackupAction,
    CommandAction,
    RestartAction,
    ServerController,
    StartAction,
    StopAction,
)
from .controllers import ShellServerController
from .errors import (
    ActionError,
    DuplicateMemberError,
    ErrorCategory,
    ExecutionFinalizedError,
    ExecutionInProgressError,
    ExecutionNotFoundError,
    GroupNotFoundError,
    InvalidScheduleError,
    MembershipError,
    OpsPilotError,
    ServerNotFoundError,
    TaskNotFoundError,
)
from .history import (
    INTERRUPTED_MESSAGE,
    ExecutionRecorder,
    close_execution,
    compute_group_status,
    failure_summary,
)
from .orchestrator import EntityLocks, GroupOrchestrator

__all__ = [
    "INTERRUPTED_MESSAGE",
    "ActionDispatcher",
    "ActionError",
    "ActionHandler",
    "BackupAction",
    "CommandAction",
    "DuplicateMemberError",
    "EntityLocks",
    "ErrorCategory",
    "ExecutionFinalizedError",
    "ExecutionInProgressError",
    "ExecutionNotFoundError",
    "ExecutionRecorder",
    "GroupNotFoundError",
    "GroupOrchestrator",
    "InvalidScheduleError",
    "MembershipError",
    "OpsPilotError",
    "RestartAction",
    "ServerController",
    "ServerNotFoundError",
    "ShellServerController",
    "StartAction",
    "StopAction",
    "TaskNotFoundError",
    "close_execution",
    "compute_group_status",
    "failure_summary",
]
