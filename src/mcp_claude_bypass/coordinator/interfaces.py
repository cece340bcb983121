"""Collaborator interfaces consumed by the permission coordinator.

The coordinator provides the mechanism; the host provides the surfaces
(dialog, visible process, prompts) through these protocols.
"""

from typing import Awaitable, Callable, Protocol

from ..models.permission import RetryChoice


class ApprovalUIUnavailableError(Exception):
    """Raised when the approval surface cannot be created or shown."""


class LauncherError(Exception):
    """Raised when the visible privileged process cannot be started."""


class ApprovalUI(Protocol):
    """Approval dialog for a single session.

    The dialog reports a "verifying" status while on_accept runs and a
    "failed" status when on_accept returns False, then stays open.
    """

    def show(
        self,
        on_accept: Callable[[], Awaitable[bool]],
        on_cancel: Callable[[], None],
        on_dispose: Callable[[], None],
    ) -> None:
        """Display the dialog and wire its callbacks.

        Raises:
            ApprovalUIUnavailableError: The dialog cannot be displayed
        """
        ...

    def close(self) -> None:
        """Close the dialog. Idempotent, callable before show()."""
        ...


class ProcessHandle(Protocol):
    """Handle to the visible privileged process."""

    def dispose(self) -> None:
        """Stop the process. Idempotent."""
        ...


class PrivilegedProcessLauncher(Protocol):
    """Starts the privileged tool where the user can see and drive it."""

    async def launch_visible(self) -> ProcessHandle:
        """Launch the process.

        Raises:
            LauncherError: The process could not be started
        """
        ...


class UserPrompter(Protocol):
    """Prompts and notifications outside the approval dialog."""

    async def ask_retry(self, message: str) -> RetryChoice | None:
        """Ask what to do after a cancelled session (None if dismissed)."""
        ...

    async def confirm_opt_out(self, message: str) -> bool:
        """Confirm that the user really wants to opt out."""
        ...

    async def warn(self, message: str) -> None:
        """Show a warning."""
        ...

    async def notify(self, message: str) -> None:
        """Show an informational, non-blocking notification."""
        ...
