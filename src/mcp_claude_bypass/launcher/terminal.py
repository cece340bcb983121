"""Visible Claude Code session used to accept bypass permissions mode."""

import asyncio
import logging
import os
import shlex
from pathlib import Path

from ..config import Settings
from ..coordinator.interfaces import LauncherError

logger = logging.getLogger(__name__)

BYPASS_ARGS = ["--permission-mode", "bypassPermissions"]
TERMINATE_TIMEOUT = 5.0  # seconds


class ClaudeProcessHandle:
    """Handle to a launched terminal process.

    Attributes:
        process: Running subprocess
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self._disposed = False
        self._reaper: asyncio.Task | None = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Terminate the process if it is still running. Idempotent."""
        if self._disposed:
            return
        self._disposed = True

        if self.process.returncode is not None:
            logger.info(f"[ClaudeTerminal] Process already exited (returncode={self.process.returncode})")
            return

        try:
            self.process.terminate()
        except ProcessLookupError:
            return

        self._reaper = asyncio.ensure_future(self._reap())
        logger.info(f"[ClaudeTerminal] Terminating permission terminal (pid={self.process.pid})")

    async def wait_closed(self) -> int | None:
        """Wait until the process has exited after dispose()."""
        if self._reaper is not None:
            await self._reaper
        return self.process.returncode

    async def _reap(self) -> None:
        """Wait for exit, kill if it does not stop in time."""
        try:
            await asyncio.wait_for(self.process.wait(), timeout=TERMINATE_TIMEOUT)
        except asyncio.TimeoutError:
            self.process.kill()
            await self.process.wait()


class ClaudeTerminalLauncher:
    """Opens `claude --permission-mode bypassPermissions` in a terminal window.

    The user accepts Claude Code's own bypass warning there, which sets
    the permission flag in the shared config file.

    Attributes:
        settings: Application settings
        workspace_root: Working directory for the session
    """

    def __init__(self, settings: Settings, workspace_root: Path | None = None) -> None:
        """Initialize launcher.

        Args:
            settings: Application settings
            workspace_root: Working directory (default: settings or cwd)
        """
        self.settings = settings
        self.workspace_root = workspace_root
        self._handles: list[ClaudeProcessHandle] = []

    def build_command(self) -> list[str]:
        """Build the terminal command line.

        Returns:
            Command list for subprocess
        """
        return [
            *shlex.split(self.settings.terminal_command),
            self.settings.claude_code_path,
            *BYPASS_ARGS,
        ]

    async def launch_visible(self) -> ClaudeProcessHandle:
        """Start the terminal process.

        Raises:
            LauncherError: If no terminal is configured or it cannot start
        """
        if not self.settings.terminal_command.strip():
            raise LauncherError("No terminal command configured")

        cmd = self.build_command()
        cwd = self._resolve_cwd()
        logger.info(f"[ClaudeTerminal] Launching: {shlex.join(cmd)} (cwd={cwd})")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=str(cwd),
            )
        except OSError as e:
            raise LauncherError(f"Cannot start {cmd[0]}: {e}") from e

        logger.info(f"[ClaudeTerminal] Permission terminal started (pid={process.pid})")
        handle = ClaudeProcessHandle(process)
        self._handles = [h for h in self._handles if h.process.returncode is None]
        self._handles.append(handle)
        return handle

    async def shutdown(self) -> None:
        """Dispose every launched terminal and wait for them to exit."""
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.dispose()
        for handle in handles:
            await handle.wait_closed()

        if handles:
            logger.info(f"[ClaudeTerminal] Closed {len(handles)} permission terminal(s)")

    def _resolve_cwd(self) -> Path:
        if self.workspace_root:
            return self.workspace_root
        if env_root := os.getenv("WORKSPACE_ROOT"):
            return Path(env_root)
        if self.settings.workspace_root:
            return Path(self.settings.workspace_root)
        return Path.cwd()
