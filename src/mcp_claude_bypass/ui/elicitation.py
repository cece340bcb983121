"""MCP elicitation surfaces for the bypass-permission approval flow.

The approval dialog and retry prompts are shown through ctx.elicit() of
the most recent MCP tool call, so they appear as native dialogs in the
client IDE.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from ..coordinator.interfaces import ApprovalUIUnavailableError
from ..models.permission import RetryChoice

logger = logging.getLogger(__name__)

APPROVAL_MESSAGE = (
    "Claude Code needs bypass permissions mode to run privileged tools.\n\n"
    "A terminal running `claude --permission-mode bypassPermissions` has been "
    "opened. Accept the warning there, or choose Accept here to set "
    "bypassPermissionsModeAccepted in ~/.claude.json."
)
VERIFYING_MESSAGE = "Verifying Claude Code permissions..."
FAILED_MESSAGE = "Unable to set permissions, please try again."


class ApprovalOption(Enum):
    """User-facing options of the approval dialog."""

    ACCEPT = "Accept"
    CANCEL = "Cancel"

    @classmethod
    def all_options(cls) -> list[str]:
        """Get all approval options as a list of strings for elicitation."""
        return [opt.value for opt in cls]


class ElicitationApprovalUI:
    """Approval dialog backed by ctx.elicit().

    Mapping of elicitation results:
    - accept + "Accept": on_accept(); on failure report and ask again
    - accept + "Cancel" or decline: on_cancel()
    - cancel (dialog dismissed) or elicitation error: on_dispose()

    Attributes:
        ctx: MCP context for elicitation
        message: Dialog text
    """

    def __init__(self, ctx: Any, message: str = APPROVAL_MESSAGE) -> None:
        """Initialize dialog.

        Args:
            ctx: MCP Context for calling elicit()
            message: Dialog text
        """
        self.ctx = ctx
        self.message = message
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def show(
        self,
        on_accept: Callable[[], Awaitable[bool]],
        on_cancel: Callable[[], None],
        on_dispose: Callable[[], None],
    ) -> None:
        """Start the elicitation dialog in the background.

        Raises:
            ApprovalUIUnavailableError: If the dialog was closed or already shown
        """
        if self._closed:
            raise ApprovalUIUnavailableError("Approval dialog already closed")
        if self._task is not None:
            raise ApprovalUIUnavailableError("Approval dialog already shown")

        self._task = asyncio.ensure_future(self._run(on_accept, on_cancel, on_dispose))
        logger.info("[ElicitationApprovalUI] Approval dialog shown")

    def close(self) -> None:
        """Close the dialog. Idempotent, callable before show()."""
        if self._closed:
            return
        self._closed = True

        # When closed from inside our own callback the task ends on its own
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

        logger.info("[ElicitationApprovalUI] Approval dialog closed")

    async def _run(
        self,
        on_accept: Callable[[], Awaitable[bool]],
        on_cancel: Callable[[], None],
        on_dispose: Callable[[], None],
    ) -> None:
        """Ask until the user cancels or accept succeeds."""
        message = self.message

        while not self._closed:
            try:
                result = await self.ctx.elicit(
                    message,
                    response_type=ApprovalOption.all_options(),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[ElicitationApprovalUI] Elicitation failed: {e}")
                on_dispose()
                return

            logger.info(f"[ElicitationApprovalUI] User responded: action={result.action}, data={result.data}")

            if self._closed:
                return

            if result.action == "cancel":
                on_dispose()
                return

            if result.action != "accept" or result.data != ApprovalOption.ACCEPT.value:
                on_cancel()
                return

            await self._report(VERIFYING_MESSAGE)
            if await on_accept():
                return

            await self._report(FAILED_MESSAGE, failed=True)
            message = f"{FAILED_MESSAGE}\n\n{self.message}"

    async def _report(self, text: str, failed: bool = False) -> None:
        """Send a status line to the client log."""
        try:
            if failed:
                await self.ctx.warning(text)
            else:
                await self.ctx.info(text)
        except Exception as e:
            logger.debug(f"[ElicitationApprovalUI] Status report failed: {e}")


class ElicitationSurface:
    """Approval UI factory and user prompter bound to the latest MCP context.

    The coordinator outlives individual tool calls, so every tool call
    re-binds its context here. Without a bound context no dialog can be
    shown and prompts fall back to abandoning.

    Attributes:
        ctx: Most recently bound MCP context, if any
    """

    def __init__(self) -> None:
        self.ctx: Any | None = None

    def bind(self, ctx: Any | None) -> None:
        """Use this context for subsequent dialogs and prompts."""
        if ctx is not None:
            self.ctx = ctx

    def create_approval_ui(self) -> ElicitationApprovalUI:
        """Create an approval dialog for a new session.

        Raises:
            ApprovalUIUnavailableError: If no MCP context is bound
        """
        if self.ctx is None:
            raise ApprovalUIUnavailableError("No MCP client context available for elicitation")
        return ElicitationApprovalUI(self.ctx)

    async def ask_retry(self, message: str) -> RetryChoice | None:
        if self.ctx is None:
            logger.warning("[ElicitationSurface] No MCP context, abandoning approval")
            return RetryChoice.ABANDON

        try:
            result = await self.ctx.elicit(message, response_type=RetryChoice.all_options())
        except Exception as e:
            logger.warning(f"[ElicitationSurface] Retry prompt failed, abandoning approval: {e}")
            return RetryChoice.ABANDON

        logger.info(f"[ElicitationSurface] Retry prompt: action={result.action}, data={result.data}")

        if result.action == "cancel":
            return RetryChoice.ABANDON
        if result.action != "accept":
            return None

        try:
            return RetryChoice.from_string(result.data)
        except ValueError as e:
            logger.warning(f"[ElicitationSurface] Unknown retry response: {e}")
            return None

    async def confirm_opt_out(self, message: str) -> bool:
        if self.ctx is None:
            return False

        try:
            result = await self.ctx.elicit(message, response_type=bool)
        except Exception as e:
            logger.warning(f"[ElicitationSurface] Opt-out confirmation failed: {e}")
            return False

        return result.action == "accept" and bool(result.data)

    async def warn(self, message: str) -> None:
        logger.warning(f"[ElicitationSurface] {message}")
        if self.ctx is None:
            return
        try:
            await self.ctx.warning(message)
        except Exception as e:
            logger.debug(f"[ElicitationSurface] Warning delivery failed: {e}")

    async def notify(self, message: str) -> None:
        logger.info(f"[ElicitationSurface] {message}")
        if self.ctx is None:
            return
        try:
            await self.ctx.info(message)
        except Exception as e:
            logger.debug(f"[ElicitationSurface] Notification delivery failed: {e}")
