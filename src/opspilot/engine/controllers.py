"""Shell-driven server controller for OpsPilot."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .actions import ServerController
from .errors import ActionError

if TYPE_CHECKING:
    from opspilot.config import ServerCommands

logger = logging.getLogger(__name__)


class ShellServerController(ServerController):
    """Drive servers by running configured shell command templates.

    Each server id maps to a set of Jinja2 templates (see ``ServerCommands``).
    Every template receives ``server_id``; the ``command`` template also
    receives the console ``command`` and ``backup`` receives the task payload
    keys. The ``quote`` filter shell-quotes a value.
    """

    def __init__(self, servers: dict[str, ServerCommands], timeout: float = 600) -> None:
        """Initialize the controller.

        Args:
            servers: Command templates per server id.
            timeout: Timeout in seconds for one shell command.
        """
        self._servers = servers
        self._timeout = timeout
        self._env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)
        self._env.filters["quote"] = lambda value: shlex.quote(str(value))

    @property
    def timeout(self) -> float:
        """Seconds one shell command may run before it is killed."""
        return self._timeout

    async def start(self, server_id: str) -> None:
        await self._run(server_id, "start")

    async def stop(self, server_id: str) -> None:
        await self._run(server_id, "stop")

    async def restart(self, server_id: str) -> None:
        await self._run(server_id, "restart")

    async def backup(self, server_id: str, options: dict[str, Any]) -> None:
        await self._run(server_id, "backup", **options)

    async def send_command(self, server_id: str, command: str) -> None:
        await self._run(server_id, "command", command=command)

    def _template(self, server_id: str, action: str) -> tuple[str, Path | None]:
        commands = self._servers.get(server_id)
        if commands is None:
            raise ActionError(f"No commands configured for server {server_id}", server_id)

        template = getattr(commands, action)
        if not template:
            raise ActionError(f"No '{action}' command configured for server {server_id}", server_id)

        working_dir = None
        if commands.working_dir:
            working_dir = Path(os.path.expandvars(os.path.expanduser(commands.working_dir)))
        return template, working_dir

    def render(self, template: str, server_id: str, **values: Any) -> str:
        """Render a command template for a server.

        Raises:
            ActionError: If the template is malformed or uses an unknown variable.
        """
        try:
            return self._env.from_string(template).render(server_id=server_id, **values)
        except TemplateError as e:
            raise ActionError(f"Bad command template: {e}", server_id) from e

    async def _run(self, server_id: str, action: str, **values: Any) -> None:
        template, working_dir = self._template(server_id, action)
        shell_command = self.render(template, server_id, **values)

        logger.debug(f"Running {action} for server {server_id}: {shell_command}")

        try:
            proc = await asyncio.create_subprocess_shell(
                shell_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_dir,
            )
        except FileNotFoundError as e:
            raise ActionError(f"Working directory not found: {e}", server_id) from e

        try:
            _, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise ActionError(f"Command timed out after {self._timeout}s", server_id) from None
        except asyncio.CancelledError:
            # Cancelled by the dispatcher timeout; do not leave the command running
            proc.kill()
            raise

        exit_code = proc.returncode or 0
        if exit_code != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            message = f"Command exited with code {exit_code}"
            if stderr:
                message = f"{message}: {stderr.splitlines()[-1]}"
            raise ActionError(message, server_id)
