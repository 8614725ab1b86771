"""OpsPilot scheduling system.

This module provides APScheduler-based timers for tasks and task groups, the
registry that keeps them in step with the store, and the manager that routes
CRUD changes through it.
"""

from .manager import AutomationManager
from .registry import SYNC_JOB_ID, ScheduleRegistry, job_id_for
from .service import SchedulerService
from .triggers import (
    convert_day_of_week,
    next_fire_time,
    parse_cron_expression,
    validate_cron_expression,
)

__all__ = [
    "SYNC_JOB_ID",
    "AutomationManager",
    "ScheduleRegistry",
    "SchedulerService",
    "convert_day_of_week",
    "job_id_for",
    "next_fire_time",
    "parse_cron_expression",
    "validate_cron_expression",
]
