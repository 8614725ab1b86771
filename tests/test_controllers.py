"""Tests for the shell server controller."""

from pathlib import Path

import pytest

from opspilot.config import ServerCommands
from opspilot.engine import ShellServerController
from opspilot.engine.errors import ActionError


@pytest.fixture
def out_file(tmp_path: Path) -> Path:
    """File the configured commands append to."""
    return tmp_path / "calls.log"


@pytest.fixture
def controller(tmp_path: Path, out_file: Path) -> ShellServerController:
    """Create a controller whose commands write to a log file."""
    servers = {
        "mc1": ServerCommands(
            start="echo start {{ server_id }} >> calls.log",
            stop="echo stop {{ server_id }} >> calls.log",
            restart="echo 'restart failed' >&2; exit 3",
            backup="echo backup {{ server_id }} {{ world }} >> calls.log",
            command="echo {{ command | quote }} >> calls.log",
            working_dir=str(tmp_path),
        ),
        "bare": ServerCommands(start="true"),
    }
    return ShellServerController(servers, timeout=5)


class TestShellServerController:
    """Tests for ShellServerController."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, controller: ShellServerController, out_file: Path) -> None:
        """Test lifecycle templates run in the working directory."""
        await controller.start("mc1")
        await controller.stop("mc1")

        assert out_file.read_text().splitlines() == ["start mc1", "stop mc1"]

    @pytest.mark.asyncio
    async def test_backup_uses_options(
        self, controller: ShellServerController, out_file: Path
    ) -> None:
        """Test backup options are available to the template."""
        await controller.backup("mc1", {"world": "main"})

        assert out_file.read_text().strip() == "backup mc1 main"

    @pytest.mark.asyncio
    async def test_command_is_quoted(
        self, controller: ShellServerController, out_file: Path
    ) -> None:
        """Test console commands reach the template as one shell word."""
        await controller.send_command("mc1", "say hi; rm -rf /")

        assert out_file.read_text().strip() == "say hi; rm -rf /"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, controller: ShellServerController) -> None:
        """Test a failing command raises with its exit code and stderr."""
        with pytest.raises(ActionError) as exc_info:
            await controller.restart("mc1")

        assert str(exc_info.value) == "Command exited with code 3: restart failed"
        assert exc_info.value.context == {"server_id": "mc1"}

    @pytest.mark.asyncio
    async def test_unknown_server(self, controller: ShellServerController) -> None:
        """Test servers without configuration are rejected."""
        with pytest.raises(ActionError, match="No commands configured for server ghost"):
            await controller.start("ghost")

    @pytest.mark.asyncio
    async def test_missing_template(self, controller: ShellServerController) -> None:
        """Test actions without a template are rejected."""
        with pytest.raises(ActionError, match="No 'stop' command configured"):
            await controller.stop("bare")

    @pytest.mark.asyncio
    async def test_missing_placeholder(self, controller: ShellServerController) -> None:
        """Test a template placeholder the payload does not provide."""
        with pytest.raises(ActionError, match="'world' is undefined"):
            await controller.backup("mc1", {})

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test slow commands are killed."""
        controller = ShellServerController({"slow": ServerCommands(start="sleep 5")}, timeout=0.1)

        with pytest.raises(ActionError, match="timed out"):
            await controller.start("slow")

    @pytest.mark.asyncio
    async def test_success_without_working_dir(self, controller: ShellServerController) -> None:
        """Test a plain command succeeds."""
        await controller.start("bare")

    def test_render_syntax_error(self, controller: ShellServerController) -> None:
        """Test malformed templates are reported as action errors."""
        with pytest.raises(ActionError, match="Bad command template"):
            controller.render("echo {{ server_id", "mc1")

    def test_render_quote_filter(self, controller: ShellServerController) -> None:
        """Test the quote filter shell-quotes values."""
        rendered = controller.render("say {{ text | quote }}", "mc1", text="it's late")

        assert rendered == "say 'it'\"'\"'s late'"
