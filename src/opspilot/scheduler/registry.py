"""Registry of live timers for schedulable tasks and task groups."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING

from opspilot.engine.errors import (
    ExecutionInProgressError,
    GroupNotFoundError,
    InvalidScheduleError,
    TaskNotFoundError,
)
from opspilot.storage import Task, TaskGroup, TaskGroupRepository, TaskRepository

from .triggers import parse_cron_expression

if TYPE_CHECKING:
    from datetime import datetime

    from opspilot.engine.orchestrator import GroupOrchestrator
    from opspilot.storage import Database

    from .service import SchedulerService

logger = logging.getLogger(__name__)

Schedulable = Task | TaskGroup

SYNC_JOB_ID = "opspilot:sync"


def job_id_for(entity: Schedulable) -> str:
    """Timer job ID of a task or task group."""
    kind = "group" if isinstance(entity, TaskGroup) else "task"
    return f"{kind}:{entity.id}"


class ScheduleRegistry:
    """In-memory authority mapping entity IDs to their live timers.

    Holds at most one timer per entity. All mutations go through a single
    lock, so load, CRUD handlers, fires and shutdown may call in from any
    thread.

    Other processes (the CLI) may change the store behind the registry's
    back. Every fire re-reads its entity before running, and once started
    the registry re-syncs all timers with the store every ``sync_interval``
    seconds.
    """

    def __init__(
        self,
        db: Database,
        scheduler: SchedulerService,
        orchestrator: GroupOrchestrator,
        sync_interval: float | None = 30,
    ) -> None:
        """Initialize the registry.

        Args:
            db: Store holding tasks and task groups.
            scheduler: Timer engine that arms and fires jobs.
            orchestrator: Runs tasks and task groups when their timers fire.
            sync_interval: Seconds between store re-syncs once started
                (None disables the periodic sync).
        """
        self._db = db
        self._scheduler = scheduler
        self._orchestrator = orchestrator
        self._sync_interval = sync_interval
        self._jobs: dict[str, str] = {}
        self._armed: dict[str, str] = {}
        self._lock = threading.RLock()
        self._closed = False

    def load(self) -> int:
        """Register every enabled task and task group from the store.

        An entity that fails to register is logged and skipped; the rest
        still load.

        Returns:
            Number of entities registered.
        """
        with self._db.session_scope() as session:
            tasks = TaskRepository(session).get_enabled()
            groups = TaskGroupRepository(session).get_enabled()

        logger.info(f"Loading {len(tasks)} tasks and {len(groups)} task groups...")

        registered = 0
        for entity in [*tasks, *groups]:
            try:
                self.register(entity)
                registered += 1
            except Exception as e:
                logger.error(f"Failed to schedule {job_id_for(entity)} ({entity.name}): {e}")

        logger.info(f"Loaded {registered} schedule(s)")
        return registered

    def register(self, entity: Schedulable) -> datetime | None:
        """Arm or re-arm the timer of a task or task group.

        A disabled entity is unregistered instead. Re-registering replaces the
        existing timer, so an entity never fires twice for one fire time.

        Args:
            entity: The task or task group to schedule.

        Returns:
            The next fire time, or None for a disabled entity.

        Raises:
            InvalidScheduleError: If the cron expression is invalid. Nothing is
                armed and any existing timer is left untouched.
        """
        if not entity.enabled:
            self.unregister(entity.id)
            return None

        trigger = parse_cron_expression(entity.cron_expression)
        job_id = job_id_for(entity)
        fire = self._fire_group if isinstance(entity, TaskGroup) else self._fire_task

        with self._lock:
            if self._closed:
                logger.warning(f"Registry is shut down; not scheduling {job_id}")
                return None

            if entity.id in self._jobs:
                self._scheduler.remove_job(self._jobs.pop(entity.id))

            self._scheduler.schedule_job(
                job_id,
                entity.name,
                trigger,
                fire,
                kwargs={"entity_id": entity.id},
            )
            self._jobs[entity.id] = job_id
            self._armed[entity.id] = entity.cron_expression

        logger.info(f"Scheduled {job_id}: {entity.name} ({entity.cron_expression})")
        return self._scheduler.get_next_run(job_id)

    def unregister(self, entity_id: str) -> bool:
        """Cancel the timer of an entity. No-op if none is armed.

        A fire already in progress is allowed to finish; no further fires
        happen after this returns.

        Returns:
            True if a timer was cancelled.
        """
        with self._lock:
            job_id = self._jobs.pop(entity_id, None)
            self._armed.pop(entity_id, None)
            if job_id is None:
                return False
            self._scheduler.remove_job(job_id)

        logger.info(f"Unscheduled {job_id}")
        return True

    def sync(self) -> int:
        """Bring every timer in line with the store.

        Arms enabled entities that have no timer, re-arms those whose stored
        cron expression changed and cancels timers of disabled or deleted
        entities.

        Returns:
            Number of timers armed, re-armed or cancelled.
        """
        with self._db.session_scope() as session:
            candidates = {t.id: "task" for t in TaskRepository(session).get_enabled()}
            candidates.update({g.id: "group" for g in TaskGroupRepository(session).get_enabled()})

        with self._lock:
            for entity_id, job_id in self._jobs.items():
                candidates.setdefault(entity_id, job_id.split(":", 1)[0])

        changed = 0
        for entity_id, kind in candidates.items():
            _, entity_changed = self._refresh(entity_id, kind)
            changed += entity_changed

        if changed:
            logger.info(f"Synced {changed} schedule(s) with the store")
        return changed

    def start(self) -> None:
        """Start firing armed timers and the periodic store sync."""
        if self._sync_interval:
            self._scheduler.schedule_interval(
                SYNC_JOB_ID, "Sync schedules with the store", self._sync_interval, self._sync
            )
        self._scheduler.start()

    def shutdown(self, wait: bool = False) -> None:
        """Cancel every timer and stop the timer engine.

        In-flight runs are detached unless ``wait`` is set.
        """
        logger.info("Stopping all schedules...")
        with self._lock:
            self._closed = True
            self._scheduler.remove_job(SYNC_JOB_ID)
            for job_id in self._jobs.values():
                self._scheduler.remove_job(job_id)
            count = len(self._jobs)
            self._jobs.clear()
            self._armed.clear()

        self._scheduler.shutdown(wait=wait)
        logger.info(f"Stopped {count} schedule(s)")

    def is_registered(self, entity_id: str) -> bool:
        """Check whether an entity has a live timer."""
        with self._lock:
            return entity_id in self._jobs

    def registered_ids(self) -> list[str]:
        """IDs of all entities with a live timer."""
        with self._lock:
            return list(self._jobs)

    def next_run(self, entity_id: str) -> datetime | None:
        """Next fire time of an entity, None if it has no timer."""
        with self._lock:
            job_id = self._jobs.get(entity_id)
        return self._scheduler.get_next_run(job_id) if job_id else None

    def _refresh(self, entity_id: str, kind: str) -> tuple[Schedulable | None, bool]:
        """Re-read one entity and fix its timer.

        Returns:
            The stored entity if it should hold a timer (None if it is
            disabled, deleted or unschedulable), and whether the timer changed.
        """
        with self._lock:
            if self._closed:
                return None, False

            with self._db.session_scope() as session:
                if kind == "group":
                    entity: Schedulable | None = TaskGroupRepository(session).get_by_id(entity_id)
                else:
                    entity = TaskRepository(session).get_by_id(entity_id)

            if entity is None or not entity.enabled:
                return None, self.unregister(entity_id)

            if self._armed.get(entity_id) == entity.cron_expression:
                return entity, False

            try:
                self.register(entity)
            except InvalidScheduleError as e:
                logger.error(f"Stored schedule of {kind} {entity_id} is invalid: {e}")
                return None, self.unregister(entity_id)
            return entity, True

    def _due(self, entity_id: str, kind: str) -> bool:
        """Check a fired entity still matches the timer that fired it."""
        with self._lock:
            armed = self._armed.get(entity_id)
            entity, _ = self._refresh(entity_id, kind)

        if entity is None:
            logger.info(f"Skipping fire of {kind} {entity_id}: disabled or deleted")
            return False
        if armed is not None and armed != entity.cron_expression:
            logger.info(
                f"Skipping fire of {kind} {entity_id}: schedule changed to "
                f"{entity.cron_expression}"
            )
            return False
        return True

    def _sync(self) -> None:
        """Periodic sync job. Runs in a worker thread."""
        try:
            self.sync()
        except Exception as e:
            logger.exception(f"Failed to sync schedules with the store: {e}")

    def _fire_group(self, entity_id: str) -> None:
        """Timer callback for a task group. Runs in a worker thread."""
        if not self._due(entity_id, "group"):
            return
        try:
            asyncio.run(self._orchestrator.execute_group(entity_id, trigger_type="scheduled"))
        except ExecutionInProgressError:
            logger.warning(f"Skipping scheduled run of group {entity_id}: already running")
        except GroupNotFoundError:
            logger.error(f"Scheduled group {entity_id} no longer exists; removing its timer")
            self.unregister(entity_id)
        except Exception as e:
            logger.exception(f"Failed to execute scheduled task group {entity_id}: {e}")

    def _fire_task(self, entity_id: str) -> None:
        """Timer callback for a single task. Runs in a worker thread."""
        if not self._due(entity_id, "task"):
            return
        try:
            asyncio.run(self._orchestrator.execute_task(entity_id, trigger_type="scheduled"))
        except ExecutionInProgressError:
            logger.warning(f"Skipping scheduled run of task {entity_id}: already running")
        except TaskNotFoundError:
            logger.error(f"Scheduled task {entity_id} no longer exists; removing its timer")
            self.unregister(entity_id)
        except Exception as e:
            logger.exception(f"Failed to execute scheduled task {entity_id}: {e}")
