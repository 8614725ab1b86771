"""Configuration management for OpsPilot."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigError(Exception):
    """Error loading or accessing configuration."""


class ServerCommands(BaseModel):
    """Shell command templates used to drive one managed server.

    Templates are Jinja2 strings rendered with ``server_id`` and, for
    ``command``, the console ``command`` taken from the task payload. Use
    ``{{ command | quote }}`` to pass it as one shell word.
    """

    start: str | None = None
    stop: str | None = None
    restart: str | None = None
    backup: str | None = None
    command: str | None = None
    working_dir: str | None = None


class SchedulerSettings(BaseModel):
    """Runtime settings for the scheduler process."""

    database_path: str | None = Field(
        default=None, description="SQLite database file (defaults to <home>/opspilot.db)"
    )
    max_workers: int = Field(default=10, ge=1, description="Size of the firing worker pool")
    misfire_grace_time: int = Field(default=60, ge=1, description="Seconds a late fire may run")
    action_timeout: float = Field(default=3600, gt=0, description="Per-action timeout in seconds")
    sync_interval: float = Field(
        default=30, gt=0, description="Seconds between re-reads of schedules from the store"
    )
    reconcile_on_start: bool = True
    history_retention_days: int = Field(default=30, ge=1)
    log_level: str = "INFO"
    servers: dict[str, ServerCommands] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and check the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            msg = f"Invalid log level: {v}"
            raise ValueError(msg)
        return level


def get_opspilot_dir() -> Path:
    """Get the OpsPilot home directory.

    ``OPSPILOT_HOME`` takes precedence over ``~/.opspilot``.
    """
    if home := os.environ.get("OPSPILOT_HOME"):
        return Path(home).expanduser()
    return Path.home() / ".opspilot"


def get_config_path() -> Path:
    """Get the path of the YAML configuration file."""
    return get_opspilot_dir() / "config.yaml"


def get_opspilot_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load the raw OpsPilot configuration file.

    Returns:
        Configuration dictionary, empty if the file doesn't exist or is unreadable.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f)
            return config if isinstance(config, dict) else {}
    except (yaml.YAMLError, OSError):
        return {}


def load_settings(config_path: Path | None = None) -> SchedulerSettings:
    """Build scheduler settings from the config file and environment.

    Checks in order of priority:
    1. ``OPSPILOT_DB``, ``OPSPILOT_MAX_WORKERS`` and ``OPSPILOT_LOG_LEVEL``
    2. The ``scheduler`` and ``servers`` sections of config.yaml
    3. Built-in defaults

    Raises:
        ConfigError: If a configured value is invalid.
    """
    config = get_opspilot_config(config_path)
    data: dict[str, Any] = dict(config.get("scheduler") or {})
    if servers := config.get("servers"):
        data["servers"] = servers

    if db := os.environ.get("OPSPILOT_DB"):
        data["database_path"] = db
    if workers := os.environ.get("OPSPILOT_MAX_WORKERS"):
        data["max_workers"] = workers
    if level := os.environ.get("OPSPILOT_LOG_LEVEL"):
        data["log_level"] = level

    try:
        settings = SchedulerSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid OpsPilot configuration: {e}") from e

    if settings.database_path is None:
        settings.database_path = str(get_opspilot_dir() / "opspilot.db")

    return settings
