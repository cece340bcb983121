"""Pytest fixtures for unit tests.

Provides:
- config_path: Location of the shared config file inside tmp_path
- store / cache: Real ConfigStore and PermissionCache over config_path
- ui_factory / launcher / prompter: Recording fakes for the coordinator's
  collaborators
- coordinator: PermissionCoordinator wired to the above, disposed after
  each test
- wait_for: Helper polling a condition on the event loop
- bump_mtime: Helper forcing a visible modification-time change
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

from mcp_claude_bypass.coordinator.interfaces import ApprovalUIUnavailableError, LauncherError
from mcp_claude_bypass.coordinator.permission_coordinator import PermissionCoordinator
from mcp_claude_bypass.models.permission import RetryChoice
from mcp_claude_bypass.storage.config_store import PERMISSION_FIELD, ConfigStore
from mcp_claude_bypass.storage.permission_cache import PermissionCache


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def wait_for(
    predicate: Callable[[], bool],
    timeout_seconds: float = 2.0,
    poll_interval: float = 0.01,
) -> None:
    """Wait until predicate() is true, yielding to the event loop.

    Raises:
        AssertionError: If the condition is not met in time
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds

    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout_seconds}s")
        await asyncio.sleep(poll_interval)


def write_config(path: Path, data: Any) -> None:
    """Write a config document the way an external tool would."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))


def read_config(path: Path) -> Any:
    return json.loads(path.read_text())


def bump_mtime(path: Path, seconds: int = 10) -> None:
    """Move the file's mtime forward so the poll sees a change."""
    stat = path.stat()
    new_mtime = stat.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(stat.st_atime_ns, new_mtime))


# =============================================================================
# COLLABORATOR FAKES
# =============================================================================

class FakeApprovalUI:
    """Approval UI recording show/close calls; tests drive the callbacks."""

    def __init__(self) -> None:
        self.shown = False
        self.close_count = 0
        self._on_accept: Callable[[], Awaitable[bool]] | None = None
        self._on_cancel: Callable[[], None] | None = None
        self._on_dispose: Callable[[], None] | None = None

    def show(self, on_accept, on_cancel, on_dispose) -> None:
        self.shown = True
        self._on_accept = on_accept
        self._on_cancel = on_cancel
        self._on_dispose = on_dispose

    def close(self) -> None:
        self.close_count += 1

    async def accept(self) -> bool:
        return await self._on_accept()

    def cancel(self) -> None:
        self._on_cancel()

    def dismiss(self) -> None:
        self._on_dispose()


class FakeUIFactory:
    """Creates FakeApprovalUI instances, or fails when unavailable."""

    def __init__(self, unavailable: bool = False) -> None:
        self.unavailable = unavailable
        self.created: list[FakeApprovalUI] = []

    def __call__(self) -> FakeApprovalUI:
        if self.unavailable:
            raise ApprovalUIUnavailableError("No approval surface")
        ui = FakeApprovalUI()
        self.created.append(ui)
        return ui

    @property
    def last(self) -> FakeApprovalUI:
        return self.created[-1]


class FakeProcessHandle:
    def __init__(self) -> None:
        self.dispose_count = 0

    def dispose(self) -> None:
        self.dispose_count += 1


class FakeLauncher:
    """Launcher recording every handle it returns."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.handles: list[FakeProcessHandle] = []

    async def launch_visible(self) -> FakeProcessHandle:
        if self.fail:
            raise LauncherError("terminal not found")
        handle = FakeProcessHandle()
        self.handles.append(handle)
        return handle


class FakePrompter:
    """Prompter answering retry prompts from a script.

    An exhausted script answers ABANDON so loops always terminate.
    """

    def __init__(
        self,
        choices: list[RetryChoice | None] | None = None,
        confirm_opt_out: bool = True,
        before_answer: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.choices = list(choices or [])
        self.confirm_result = confirm_opt_out
        self.before_answer = before_answer
        self.retry_messages: list[str] = []
        self.opt_out_messages: list[str] = []
        self.warnings: list[str] = []
        self.notifications: list[str] = []

    async def ask_retry(self, message: str) -> RetryChoice | None:
        self.retry_messages.append(message)
        if self.before_answer is not None:
            await self.before_answer()
        if self.choices:
            return self.choices.pop(0)
        return RetryChoice.ABANDON

    async def confirm_opt_out(self, message: str) -> bool:
        self.opt_out_messages.append(message)
        return self.confirm_result

    async def warn(self, message: str) -> None:
        self.warnings.append(message)

    async def notify(self, message: str) -> None:
        self.notifications.append(message)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def field() -> str:
    return PERMISSION_FIELD


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Shared config file location (not created)."""
    return tmp_path / "home" / ".claude.json"


@pytest.fixture
def store(config_path: Path) -> ConfigStore:
    """Config store with fast polling and no retry delay."""
    return ConfigStore(config_path, poll_interval=0.02, parse_retry_delay=0)


@pytest.fixture
def cache(store: ConfigStore) -> PermissionCache:
    return PermissionCache(store)


@pytest.fixture
def ui_factory() -> FakeUIFactory:
    return FakeUIFactory()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def prompter() -> FakePrompter:
    return FakePrompter()


@pytest.fixture
async def coordinator(store, cache, ui_factory, launcher, prompter):
    """Coordinator over the real store/cache with fake collaborators."""
    coord = PermissionCoordinator(
        store=store,
        cache=cache,
        ui_factory=ui_factory,
        launcher=launcher,
        prompter=prompter,
    )

    yield coord

    await coord.dispose()
