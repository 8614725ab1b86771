"""Input models for creating and updating tasks and task groups."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from opspilot.storage.models import ActionKind, FailureMode


def _normalize_cron(v: str) -> str:
    # Field checks are left to parse_cron_expression (InvalidScheduleError)
    return " ".join(v.split())


class TaskSpec(BaseModel):
    """Definition of a new task."""

    name: str = Field(..., min_length=1, max_length=100)
    server_id: str
    action: ActionKind
    cron_expression: str = Field(..., description="Cron expression (5 fields, UTC)")
    payload: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str) -> str:
        """Collapse whitespace between cron fields."""
        return _normalize_cron(v)

    @model_validator(mode="after")
    def validate_payload(self) -> TaskSpec:
        """Console commands need the command text in the payload."""
        if self.action == ActionKind.COMMAND and not self.payload.get("command"):
            msg = "Command tasks require a 'command' entry in the payload"
            raise ValueError(msg)
        return self


class TaskUpdate(BaseModel):
    """Partial update of a task. Unset fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    action: ActionKind | None = None
    cron_expression: str | None = None
    payload: dict[str, Any] | None = None
    enabled: bool | None = None

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str | None) -> str | None:
        """Collapse whitespace between cron fields when given."""
        return None if v is None else _normalize_cron(v)


class TaskGroupSpec(BaseModel):
    """Definition of a new task group."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    cron_expression: str
    failure_mode: FailureMode = FailureMode.STOP
    delay_between_tasks: float = Field(default=0.0, ge=0)
    enabled: bool = True
    task_ids: list[str] = Field(default_factory=list)

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str) -> str:
        """Collapse whitespace between cron fields."""
        return _normalize_cron(v)

    @field_validator("task_ids")
    @classmethod
    def validate_unique_tasks(cls, v: list[str]) -> list[str]:
        """A task appears in a group at most once."""
        if len(set(v)) != len(v):
            msg = "task_ids must not contain duplicates"
            raise ValueError(msg)
        return v


class TaskGroupUpdate(BaseModel):
    """Partial update of a task group. Unset fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    cron_expression: str | None = None
    failure_mode: FailureMode | None = None
    delay_between_tasks: float | None = Field(default=None, ge=0)
    enabled: bool | None = None

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str | None) -> str | None:
        """Collapse whitespace between cron fields when given."""
        return None if v is None else _normalize_cron(v)
