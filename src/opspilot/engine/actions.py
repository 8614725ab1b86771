"""Action dispatch for OpsPilot tasks.

A task's ``action`` selects one of a closed set of handlers. Every handler
drives the same collaborator, a :class:`ServerController`, which owns the
actual effect on the managed server.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

from opspilot.models.results import ActionOutcome
from opspilot.storage.models import ActionKind

from .errors import ActionError

if TYPE_CHECKING:
    from opspilot.storage.models import Task

logger = logging.getLogger(__name__)


class ServerController(ABC):
    """Performs lifecycle actions against managed servers.

    Implementations raise on failure; returning normally means success.
    """

    @abstractmethod
    async def start(self, server_id: str) -> None:
        """Start a server."""

    @abstractmethod
    async def stop(self, server_id: str) -> None:
        """Stop a server."""

    @abstractmethod
    async def restart(self, server_id: str) -> None:
        """Restart a server."""

    @abstractmethod
    async def backup(self, server_id: str, options: dict[str, Any]) -> None:
        """Back up a server's data."""

    @abstractmethod
    async def send_command(self, server_id: str, command: str) -> None:
        """Send a console command to a server."""


class ActionHandler(ABC):
    """Abstract base class for task action handlers."""

    @abstractmethod
    async def execute(self, controller: ServerController, task: Task) -> None:
        """Run the action for a task.

        Raises:
            Exception: Any error means the action failed.
        """


class StartAction(ActionHandler):
    """Start the task's server."""

    async def execute(self, controller: ServerController, task: Task) -> None:
        await controller.start(task.server_id)


class StopAction(ActionHandler):
    """Stop the task's server."""

    async def execute(self, controller: ServerController, task: Task) -> None:
        await controller.stop(task.server_id)


class RestartAction(ActionHandler):
    """Restart the task's server."""

    async def execute(self, controller: ServerController, task: Task) -> None:
        await controller.restart(task.server_id)


class BackupAction(ActionHandler):
    """Back up the task's server, passing the payload through as options."""

    async def execute(self, controller: ServerController, task: Task) -> None:
        await controller.backup(task.server_id, dict(task.payload or {}))


class CommandAction(ActionHandler):
    """Send the payload's console command to the task's server."""

    async def execute(self, controller: ServerController, task: Task) -> None:
        command = (task.payload or {}).get("command")
        if not command or not isinstance(command, str):
            raise ActionError(f"Task '{task.name}' has no command to send", task.server_id)
        await controller.send_command(task.server_id, command)


class ActionDispatcher:
    """Runs a task's action and reports the outcome.

    This is the single entry point the orchestrator uses; it never raises for
    a failed action.
    """

    _handlers: ClassVar[dict[ActionKind, ActionHandler]] = {
        ActionKind.START: StartAction(),
        ActionKind.STOP: StopAction(),
        ActionKind.RESTART: RestartAction(),
        ActionKind.BACKUP: BackupAction(),
        ActionKind.COMMAND: CommandAction(),
    }

    def __init__(self, controller: ServerController, timeout: float = 3600) -> None:
        """Initialize the dispatcher.

        Args:
            controller: Collaborator that performs server actions.
            timeout: Maximum seconds a single action may take.
        """
        self._controller = controller
        self._timeout = timeout

    @property
    def controller(self) -> ServerController:
        """The collaborator that performs server actions."""
        return self._controller

    @classmethod
    def handler_for(cls, action: ActionKind | str) -> ActionHandler:
        """Get the handler for an action kind.

        Raises:
            ValueError: If the action kind is unknown.
        """
        return cls._handlers[ActionKind(action)]

    async def execute(self, task: Task) -> ActionOutcome:
        """Execute a task's action.

        Args:
            task: The task to run.

        Returns:
            ActionOutcome with ok=False and an error message on any failure.
        """
        try:
            handler = self.handler_for(task.action)
        except ValueError:
            return ActionOutcome.failure(f"Unknown action type: {task.action}")

        try:
            await asyncio.wait_for(handler.execute(self._controller, task), timeout=self._timeout)
        except TimeoutError:
            logger.warning(f"Task '{task.name}' timed out after {self._timeout}s")
            return ActionOutcome.failure(f"Action timed out after {self._timeout}s")
        except Exception as e:
            logger.warning(f"Task '{task.name}' ({task.action}) failed: {e}")
            return ActionOutcome.failure(str(e) or e.__class__.__name__)

        return ActionOutcome.success()
