"""State machine tying the permission cache to the interactive approval flow."""

import asyncio
import logging
from typing import Awaitable, Callable, Coroutine

from ..models.permission import (
    ApprovalSession,
    ApprovalStatus,
    CoordinatorState,
    PermissionTransition,
    RetryChoice,
)
from ..storage.config_store import ConfigStore, ConfigWriteError, WatchRegistrationError
from ..storage.permission_cache import PermissionCache
from .interfaces import (
    ApprovalUI,
    ApprovalUIUnavailableError,
    LauncherError,
    PrivilegedProcessLauncher,
    UserPrompter,
)

logger = logging.getLogger(__name__)

NOT_GRANTED_MESSAGE = (
    "Claude Code bypass permissions not granted. Privileged Claude Code tools "
    "will not work. Please approve, or opt out."
)
OPT_OUT_CONFIRM_MESSAGE = (
    "Are you sure you want to opt out? Privileged Claude Code tools will be disabled."
)
REVOKED_MESSAGE = "Claude Code permissions have been revoked. Please grant permissions again."
GRANTED_MESSAGE = "Claude Code permissions detected and verified!"


class PermissionCoordinator:
    """Orchestrates permission checks, approval sessions and flag transitions.

    Two independent paths can set the flag:
    1. Explicit grant (user accepts in the approval UI -> grant_permission)
    2. External grant (Claude Code or the user edits the config file,
       picked up by the file watch -> cache transition event)

    Both converge on the same cache state. Whichever resolves the active
    approval session first tears down its UI and process; the other is a
    no-op for that session.

    Attributes:
        store: Config store holding the flag
        cache: Permission cache over the store
    """

    def __init__(
        self,
        store: ConfigStore,
        cache: PermissionCache,
        ui_factory: Callable[[], ApprovalUI],
        launcher: PrivilegedProcessLauncher,
        prompter: UserPrompter,
        on_opt_out: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            store: Config store holding the flag
            cache: Permission cache over the store
            ui_factory: Creates a fresh approval UI per session
            launcher: Starts the visible privileged process
            prompter: Retry prompts, warnings and notifications
            on_opt_out: Host hook that deregisters the consuming tool
        """
        self.store = store
        self.cache = cache
        self._ui_factory = ui_factory
        self._launcher = launcher
        self._prompter = prompter
        self._on_opt_out = on_opt_out

        self._state = CoordinatorState.UNINITIALIZED
        self._session: ApprovalSession | None = None
        self._last_session: ApprovalSession | None = None
        self._tasks: set[asyncio.Task] = set()
        self._watch_failure_logged = False
        self._disposed = False

        self._subscription = cache.subscribe(self._on_transition)

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def session(self) -> ApprovalSession | None:
        """Active approval session, if any."""
        return self._session

    @property
    def last_session(self) -> ApprovalSession | None:
        """Most recent approval session, active or finished."""
        return self._last_session

    @property
    def monitoring(self) -> bool:
        """True while external changes are picked up automatically."""
        return self.store.watching

    async def initialize_permissions(self) -> bool:
        """Check the permission and, if missing, run the approval loop.

        Returns:
            True once the permission is granted, False if the user gave up
        """
        logger.info("[PermissionCoordinator] Initializing permissions...")
        self._state = CoordinatorState.CHECKING

        # Monitor even when granted: the permission may be revoked later
        self.start_monitoring()

        if await self.cache.refresh_and_get():
            logger.info("[PermissionCoordinator] Permissions already granted")
            self._state = CoordinatorState.GRANTED
            return True

        logger.info("[PermissionCoordinator] No permissions found, showing setup")
        self._state = CoordinatorState.NOT_GRANTED
        return await self._run_approval_loop()

    async def check_permission(self) -> bool:
        """Cached permission check for the hot path."""
        return await self.cache.get()

    async def grant_permission(self) -> bool:
        """Set the flag and refresh the cache.

        Returns:
            True if the flag was written, False on a write failure
        """
        try:
            await self.store.write(True)
        except ConfigWriteError as e:
            logger.error(f"[PermissionCoordinator] Failed to grant permission: {e}")
            return False

        await self.cache.refresh()
        logger.info("[PermissionCoordinator] Permission granted")
        return True

    async def reset_permission(self) -> bool:
        """Clear the flag and refresh the cache.

        The resulting revoked transition starts a new approval flow.

        Returns:
            True if the flag was written, False on a write failure
        """
        logger.info("[PermissionCoordinator] Resetting permission to false...")
        try:
            await self.store.write(False)
        except ConfigWriteError as e:
            logger.error(f"[PermissionCoordinator] Failed to reset permission: {e}")
            return False

        await self.cache.refresh()
        logger.info("[PermissionCoordinator] Permission reset completed")
        return True

    async def show_approval_flow(self, attempt: int = 1) -> bool:
        """Open the approval UI and visible process, and wait for a result.

        Resolves on explicit accept, cancel, UI dispose, or an external
        grant observed while the UI is open. Any previous session is
        superseded first.

        Args:
            attempt: 1-based attempt number within the retry loop

        Returns:
            True if the session ended with the permission granted
        """
        if self._disposed:
            logger.warning("[PermissionCoordinator] Approval flow requested after dispose")
            return False

        logger.info(f"[PermissionCoordinator] Starting permission setup flow (attempt {attempt})...")

        if self._session is not None:
            logger.info("[PermissionCoordinator] Superseding previous approval session")
            self._resolve(self._session, ApprovalStatus.CANCELLED)

        session = ApprovalSession(
            attempts=attempt,
            outcome=asyncio.get_running_loop().create_future(),
        )
        self._session = session
        self._last_session = session
        self._state = CoordinatorState.AWAITING_APPROVAL

        try:
            try:
                session.process = await self._launcher.launch_visible()
            except LauncherError as e:
                logger.warning(
                    f"[PermissionCoordinator] Could not launch permission terminal, "
                    f"continuing with approval UI only: {e}"
                )

            if not session.active:
                # Resolved while the process was starting
                if session.process is not None:
                    session.process.dispose()
                    session.process = None
                return await session.outcome

            self._open_ui(session)
            return await session.outcome

        finally:
            # No-op when already resolved; covers caller cancellation
            self._resolve(session, ApprovalStatus.CANCELLED)

    def start_monitoring(self) -> bool:
        """Start watching the config file for external changes.

        Returns:
            True if the watch is running, False in manual-check-only mode
        """
        if self.store.watching:
            return True

        logger.info("[PermissionCoordinator] Starting file monitoring...")
        try:
            self.store.watch(self.cache.refresh)
        except WatchRegistrationError as e:
            if not self._watch_failure_logged:
                logger.warning(
                    f"[PermissionCoordinator] File monitoring unavailable, external "
                    f"permission changes will only be seen on explicit checks: {e}"
                )
                self._watch_failure_logged = True
            return False

        return True

    async def dispose(self) -> None:
        """Release the watch, the active session and background tasks."""
        if self._disposed:
            return
        self._disposed = True

        self._subscription.unsubscribe()
        self.store.dispose()

        if self._session is not None:
            self._resolve(self._session, ApprovalStatus.CANCELLED)

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("[PermissionCoordinator] Disposed")

    async def _run_approval_loop(self) -> bool:
        """Show the approval flow until granted or the user gives up."""
        attempt = 1
        granted = await self.show_approval_flow(attempt)

        while not granted and not self._disposed:
            choice = await self._prompter.ask_retry(NOT_GRANTED_MESSAGE)

            # The flag may have been set from outside while the prompt was open
            if self.cache.value:
                granted = True
                break

            if choice is RetryChoice.TRY_AGAIN:
                attempt += 1
                granted = await self.show_approval_flow(attempt)

            elif choice is RetryChoice.OPT_OUT:
                logger.info("[PermissionCoordinator] User chose to opt out")
                if await self._prompter.confirm_opt_out(OPT_OUT_CONFIRM_MESSAGE):
                    await self._opt_out()
                    break

            elif choice is RetryChoice.ABANDON:
                logger.info(f"[PermissionCoordinator] User gave up after {attempt} attempt(s)")
                break

        if granted:
            self._state = CoordinatorState.GRANTED
        else:
            self._state = CoordinatorState.GAVE_UP
            last = self._last_session
            if last is not None and last.status is ApprovalStatus.CANCELLED:
                last.status = ApprovalStatus.GAVE_UP
        return granted

    def _open_ui(self, session: ApprovalSession) -> None:
        """Create and show the approval UI for a session."""

        async def on_accept() -> bool:
            return await self._accept(session)

        def on_cancel() -> None:
            logger.info("[PermissionCoordinator] User cancelled")
            self._resolve(session, ApprovalStatus.CANCELLED)

        def on_dispose() -> None:
            logger.info("[PermissionCoordinator] Approval UI disposed")
            self._resolve(session, ApprovalStatus.CANCELLED)

        try:
            session.ui = self._ui_factory()
            session.ui.show(on_accept=on_accept, on_cancel=on_cancel, on_dispose=on_dispose)
        except ApprovalUIUnavailableError as e:
            logger.warning(f"[PermissionCoordinator] Approval UI unavailable, treating as cancel: {e}")
            self._resolve(session, ApprovalStatus.CANCELLED)

    async def _accept(self, session: ApprovalSession) -> bool:
        """Handle an explicit accept from the approval UI."""
        if not session.active:
            return session.status is ApprovalStatus.GRANTED

        logger.info("[PermissionCoordinator] User accepted, granting permission")
        # The write alone is not enough: the flag must read back as set
        success = await self.grant_permission() and self.cache.value is True
        if success:
            self._resolve(session, ApprovalStatus.GRANTED)
        return success

    def _on_transition(self, transition: PermissionTransition) -> None:
        """React to a flag transition reported by the cache."""
        if transition.granted:
            session = self._session
            if session is not None and session.active:
                logger.info("[PermissionCoordinator] Permission granted detected, closing UI elements")
                self._resolve(session, ApprovalStatus.GRANTED)
            else:
                logger.info("[PermissionCoordinator] Permission granted outside an approval session")
                self._state = CoordinatorState.GRANTED
            self._spawn(self._prompter.notify(GRANTED_MESSAGE))
        else:
            logger.info("[PermissionCoordinator] Permission revoked detected, showing setup")
            self._state = CoordinatorState.NOT_GRANTED
            self._spawn(self._handle_revoked())

    async def _handle_revoked(self) -> None:
        await self._prompter.warn(REVOKED_MESSAGE)

        if self._session is not None and self._session.active:
            logger.info("[PermissionCoordinator] Approval session already open, not starting another")
            return

        await self.show_approval_flow()

    async def _opt_out(self) -> None:
        self._state = CoordinatorState.GAVE_UP
        if self._on_opt_out is None:
            logger.info("[PermissionCoordinator] No opt-out hook registered")
            return

        try:
            await self._on_opt_out()
            logger.info("[PermissionCoordinator] Opt-out hook executed")
        except Exception as e:
            logger.error(f"[PermissionCoordinator] Failed to opt out: {e}")

    def _resolve(self, session: ApprovalSession, status: ApprovalStatus) -> None:
        """Finish a session exactly once: tear down, then publish the outcome."""
        if not session.active:
            return
        session.status = status

        if self._session is session:
            self._session = None
            if status is ApprovalStatus.GRANTED:
                self._state = CoordinatorState.GRANTED
            else:
                self._state = CoordinatorState.CANCELLED

        self._teardown(session)

        if not session.outcome.done():
            session.outcome.set_result(status is ApprovalStatus.GRANTED)

        logger.info(
            f"[PermissionCoordinator] Approval session (attempt {session.attempts}) "
            f"resolved: {status.value}"
        )

    def _teardown(self, session: ApprovalSession) -> None:
        """Close the session's UI and dispose its process."""
        logger.info("[PermissionCoordinator] Closing UI elements")

        ui, session.ui = session.ui, None
        process, session.process = session.process, None

        if ui is not None:
            try:
                ui.close()
            except Exception as e:
                logger.warning(f"[PermissionCoordinator] Error closing approval UI: {e}")

        if process is not None:
            try:
                process.dispose()
            except Exception as e:
                logger.warning(f"[PermissionCoordinator] Error disposing permission terminal: {e}")

    def _spawn(self, coro: Coroutine) -> None:
        """Run a coroutine as a tracked background task."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            logger.error(f"[PermissionCoordinator] Background task failed: {exc!r}")
