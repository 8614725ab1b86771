"""Pytest configuration and shared fixtures."""

import asyncio
import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

# Rich tables truncate cells to the terminal width; CliRunner has no terminal,
# so pin a wide console before the CLI module creates it.
os.environ.setdefault("COLUMNS", "200")

from opspilot.engine import ActionDispatcher, GroupOrchestrator, ServerController
from opspilot.engine.errors import ActionError
from opspilot.scheduler import AutomationManager, ScheduleRegistry, SchedulerService
from opspilot.storage import (
    ActionKind,
    Database,
    FailureMode,
    Server,
    ServerRepository,
    Task,
    TaskGroup,
    TaskGroupMember,
    TaskGroupRepository,
    TaskRepository,
)


class FakeController(ServerController):
    """Server controller that records calls instead of touching servers.

    Console commands listed in ``failing_commands`` raise, as does every
    action on a server listed in ``failing_servers``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.failing_commands: set[str] = set()
        self.failing_servers: set[str] = set()
        self.delay = 0.0

    async def _act(self, action: str, server_id: str, detail: Any = None) -> None:
        self.calls.append((action, server_id, detail))
        if self.delay:
            await asyncio.sleep(self.delay)
        if server_id in self.failing_servers:
            raise ActionError(f"{action} failed on {server_id}", server_id)
        if action == "command" and detail in self.failing_commands:
            raise ActionError(f"command '{detail}' failed", server_id)

    async def start(self, server_id: str) -> None:
        await self._act("start", server_id)

    async def stop(self, server_id: str) -> None:
        await self._act("stop", server_id)

    async def restart(self, server_id: str) -> None:
        await self._act("restart", server_id)

    async def backup(self, server_id: str, options: dict[str, Any]) -> None:
        await self._act("backup", server_id, options)

    async def send_command(self, server_id: str, command: str) -> None:
        await self._act("command", server_id, command)

    @property
    def commands(self) -> list[str]:
        """Console commands sent, in order."""
        return [detail for action, _, detail in self.calls if action == "command"]


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def opspilot_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point OPSPILOT_HOME at a temporary directory."""
    home = tmp_path / ".opspilot"
    monkeypatch.setenv("OPSPILOT_HOME", str(home))
    for name in ("OPSPILOT_DB", "OPSPILOT_MAX_WORKERS", "OPSPILOT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def db() -> Generator[Database, None, None]:
    """Create an in-memory database with all tables."""
    database = Database(":memory:")
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def controller() -> FakeController:
    """Create a recording server controller."""
    return FakeController()


@pytest.fixture
def sleeper() -> SleepRecorder:
    """Create a recording sleep function."""
    return SleepRecorder()


@pytest.fixture
def orchestrator(
    db: Database, controller: FakeController, sleeper: SleepRecorder
) -> GroupOrchestrator:
    """Create an orchestrator that never really sleeps."""
    return GroupOrchestrator(db, ActionDispatcher(controller, timeout=5), sleep=sleeper)


@pytest.fixture
def scheduler_service() -> Generator[SchedulerService, None, None]:
    """Create a scheduler service that is not started."""
    service = SchedulerService(max_workers=2)
    yield service
    service.shutdown(wait=False)


@pytest.fixture
def registry(
    db: Database, scheduler_service: SchedulerService, orchestrator: GroupOrchestrator
) -> ScheduleRegistry:
    """Create a schedule registry on the stopped scheduler."""
    return ScheduleRegistry(db, scheduler_service, orchestrator)


@pytest.fixture
def manager(
    db: Database, registry: ScheduleRegistry, orchestrator: GroupOrchestrator
) -> AutomationManager:
    """Create an automation manager whose timers never fire."""
    return AutomationManager(db, registry, orchestrator)


@pytest.fixture
def server(db: Database) -> Server:
    """Create a managed server."""
    with db.session_scope() as session:
        return ServerRepository(session).create(Server(id="srv-1", name="Survival"))


@pytest.fixture
def make_task(db: Database, server: Server) -> Callable[..., Task]:
    """Factory for command tasks stored directly in the database."""

    def _make(
        name: str,
        command: str | None = None,
        enabled: bool = True,
        cron: str = "0 4 * * *",
    ) -> Task:
        with db.session_scope() as session:
            return TaskRepository(session).create(
                Task(
                    server_id=server.id,
                    name=name,
                    action=ActionKind.COMMAND,
                    payload={"command": command or name},
                    cron_expression=cron,
                    enabled=enabled,
                )
            )

    return _make


@pytest.fixture
def make_group(db: Database) -> Callable[..., TaskGroup]:
    """Factory for task groups stored directly in the database."""

    def _make(
        tasks: list[Task],
        failure_mode: FailureMode = FailureMode.STOP,
        delay: float = 0.0,
        name: str = "nightly",
        cron: str = "0 4 * * *",
        enabled: bool = True,
    ) -> TaskGroup:
        with db.session_scope() as session:
            repo = TaskGroupRepository(session)
            group = repo.create(
                TaskGroup(
                    name=name,
                    cron_expression=cron,
                    failure_mode=failure_mode,
                    delay_between_tasks=delay,
                    enabled=enabled,
                )
            )
            for position, task in enumerate(tasks):
                repo.add_member(
                    TaskGroupMember(group_id=group.id, task_id=task.id, sort_order=position)
                )
            return group

    return _make
