"""SQLAlchemy database models for the OpsPilot store."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, ClassVar

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)
from sqlalchemy.types import JSON


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form SQLite hands back."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map: ClassVar[dict[type, type]] = {
        dict[str, Any]: JSON,
    }


class ActionKind(str, enum.Enum):
    """Action a task performs against its server."""

    BACKUP = "backup"
    RESTART = "restart"
    START = "start"
    STOP = "stop"
    COMMAND = "command"


class FailureMode(str, enum.Enum):
    """How a task group reacts to a failed member."""

    STOP = "stop"
    CONTINUE = "continue"


class TaskRunStatus(str, enum.Enum):
    """Outcome of the last run of a single task."""

    SUCCESS = "success"
    FAILED = "failed"


class ExecutionStatus(str, enum.Enum):
    """Status of a task group execution."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class Server(Base):
    """A managed server that tasks act upon."""

    __tablename__ = "servers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    tasks: Mapped[list[Task]] = relationship(
        "Task", back_populates="server", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Server(id={self.id!r}, name={self.name!r})>"


class Task(Base):
    """A single scheduled action against a server."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    server_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[ActionKind] = mapped_column(Enum(ActionKind), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_status: Mapped[TaskRunStatus | None] = mapped_column(
        Enum(TaskRunStatus), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    server: Mapped[Server] = relationship("Server", back_populates="tasks")
    memberships: Mapped[list[TaskGroupMember]] = relationship(
        "TaskGroupMember", back_populates="task", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Task(id={self.id!r}, name={self.name!r}, action={self.action})>"


class TaskGroup(Base):
    """An ordered pipeline of tasks sharing one schedule."""

    __tablename__ = "task_groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    failure_mode: Mapped[FailureMode] = mapped_column(
        Enum(FailureMode), default=FailureMode.STOP
    )
    delay_between_tasks: Mapped[float] = mapped_column(Float, default=0.0)
    last_run: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_status: Mapped[ExecutionStatus | None] = mapped_column(
        Enum(ExecutionStatus), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    members: Mapped[list[TaskGroupMember]] = relationship(
        "TaskGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by=lambda: [TaskGroupMember.sort_order, TaskGroupMember.id],
    )
    executions: Mapped[list[TaskGroupExecution]] = relationship(
        "TaskGroupExecution", back_populates="group", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<TaskGroup(id={self.id!r}, name={self.name!r}, enabled={self.enabled})>"


class TaskGroupMember(Base):
    """Position of a task inside a task group."""

    __tablename__ = "task_group_members"
    __table_args__ = (UniqueConstraint("group_id", "task_id", name="uq_group_task"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("task_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    group: Mapped[TaskGroup] = relationship("TaskGroup", back_populates="members")
    task: Mapped[Task] = relationship("Task", back_populates="memberships")

    def __repr__(self) -> str:
        return (
            f"<TaskGroupMember(group={self.group_id!r}, task={self.task_id!r}, "
            f"sort_order={self.sort_order})>"
        )


class TaskGroupExecution(Base):
    """Record of one task group run."""

    __tablename__ = "task_group_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("task_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    trigger_type: Mapped[str] = mapped_column(String(20), default="manual")
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(ExecutionStatus), default=ExecutionStatus.RUNNING
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    tasks_total: Mapped[int] = mapped_column(Integer, default=0)
    tasks_completed: Mapped[int] = mapped_column(Integer, default=0)
    tasks_failed: Mapped[int] = mapped_column(Integer, default=0)
    tasks_skipped: Mapped[int] = mapped_column(Integer, default=0)
    # Serialized list of TaskOutcome; read through the repository
    task_results: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    group: Mapped[TaskGroup] = relationship("TaskGroup", back_populates="executions")

    @property
    def duration_ms(self) -> int | None:
        """Wall time of the run, None while it is still running."""
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def __repr__(self) -> str:
        return (
            f"<TaskGroupExecution(id={self.id!r}, group={self.group_id!r}, "
            f"status={self.status})>"
        )
