"""APScheduler service driving OpsPilot timers."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from collections.abc import Callable

    from apscheduler.job import Job
    from apscheduler.triggers.base import BaseTrigger

logger = logging.getLogger(__name__)


class SchedulerService:
    """Timer engine backed by an APScheduler ``BackgroundScheduler``.

    Each fire is handed to a bounded thread pool, so a long run never delays
    other timers. Jobs live in memory only: the store is the source of truth
    and schedules are re-registered from it at startup.
    """

    def __init__(
        self,
        max_workers: int = 10,
        misfire_grace_time: int = 60,
    ) -> None:
        """Initialize the scheduler service.

        Args:
            max_workers: Size of the worker pool that executes fired jobs.
            misfire_grace_time: Seconds a fire may be late and still run.
        """
        job_defaults = {
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,  # Only one instance at a time
            "misfire_grace_time": misfire_grace_time,
        }

        self._scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults=job_defaults,
            timezone=UTC,
        )
        self._scheduler.add_listener(
            self._on_job_skipped, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            return

        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        """Stop firing timers and release the worker pool.

        Args:
            wait: Whether to wait for in-flight jobs to complete. When False,
                running jobs are left to finish on their own.
        """
        if not self._running:
            return

        self._scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Scheduler stopped")

    def schedule_job(
        self,
        job_id: str,
        name: str,
        trigger: BaseTrigger,
        func: Callable[..., Any],
        kwargs: dict[str, Any] | None = None,
    ) -> str:
        """Arm a timer, replacing any job with the same ID.

        Args:
            job_id: Unique job ID.
            name: Human readable job name.
            trigger: When the job fires.
            func: Callable run in the worker pool on each fire.
            kwargs: Keyword arguments for ``func``.

        Returns:
            The job ID.
        """
        if not self._running:
            # APScheduler only applies replace_existing to pending jobs at start()
            self.remove_job(job_id)

        job = self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            kwargs=kwargs or {},
            replace_existing=True,
        )
        logger.debug(f"Armed job {job.id} ({trigger})")
        return job.id

    def schedule_interval(
        self,
        job_id: str,
        name: str,
        seconds: float,
        func: Callable[..., Any],
    ) -> str:
        """Arm a job that repeats every ``seconds``, replacing any with the same ID.

        Returns:
            The job ID.
        """
        trigger = IntervalTrigger(seconds=seconds, timezone=UTC)
        return self.schedule_job(job_id, name, trigger, func)

    def remove_job(self, job_id: str) -> bool:
        """Cancel a timer. A fire already in progress is left to finish.

        Returns:
            True if removed, False if not found.
        """
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False

        logger.debug(f"Removed job {job_id}")
        return True

    def has_job(self, job_id: str) -> bool:
        """Check whether a timer is armed for a job ID."""
        return self._scheduler.get_job(job_id) is not None

    def get_jobs(self) -> list[dict[str, Any]]:
        """Get all armed timers.

        Returns:
            List of job information dictionaries.
        """
        return [self._describe(job) for job in self._scheduler.get_jobs()]

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        """Get information about one timer, or None if not armed."""
        job = self._scheduler.get_job(job_id)
        return self._describe(job) if job else None

    def get_next_run(self, job_id: str) -> datetime | None:
        """Get the next fire time of a job.

        Returns:
            Next run datetime or None if not scheduled.
        """
        job = self._scheduler.get_job(job_id)
        return self._next_run_of(job) if job else None

    @staticmethod
    def _next_run_of(job: Job) -> datetime | None:
        # Jobs added before start() have no next_run_time yet
        next_run: datetime | None = getattr(job, "next_run_time", None)
        if next_run is None and job.pending:
            next_run = job.trigger.get_next_fire_time(None, datetime.now(UTC))
        return next_run

    def _describe(self, job: Job) -> dict[str, Any]:
        return {
            "id": job.id,
            "name": job.name,
            "next_run": self._next_run_of(job),
            "trigger": str(job.trigger),
        }

    @staticmethod
    def _on_job_skipped(event: JobEvent) -> None:
        if event.code == EVENT_JOB_MAX_INSTANCES:
            logger.warning(f"Skipped fire of {event.job_id}: previous run still in progress")
        else:
            logger.warning(f"Missed fire of {event.job_id} (scheduler was busy or asleep)")
