"""FastMCP server gating Claude Code bypass permissions mode."""

import asyncio
import logging
import signal
import sys
from typing import Any

from fastmcp import FastMCP, Context

from .config import Settings
from .coordinator.permission_coordinator import PermissionCoordinator
from .launcher.terminal import ClaudeTerminalLauncher
from .storage.config_store import ConfigStore
from .storage.permission_cache import PermissionCache
from .ui.elicitation import ElicitationSurface

logger = logging.getLogger(__name__)

mcp = FastMCP("claude-bypass-permission")
settings = Settings()

# One coordinator per server process, created on the first tool call
_surface = ElicitationSurface()
_coordinator: PermissionCoordinator | None = None
_launcher: ClaudeTerminalLauncher | None = None
_opted_out = False

OPTED_OUT_MESSAGE = "Bypass permission tools were disabled after the user opted out."


def _get_coordinator(ctx: Context | None) -> PermissionCoordinator:
    """Get the process-wide coordinator, binding the caller's context."""
    global _coordinator, _launcher

    _surface.bind(ctx)

    if _coordinator is None:
        _launcher = ClaudeTerminalLauncher(settings)
        store = ConfigStore(
            settings.get_claude_config_path(),
            field=settings.permission_field,
            poll_interval=settings.poll_interval_seconds,
            parse_retry_attempts=settings.parse_retry_attempts,
            parse_retry_delay=settings.parse_retry_delay_seconds,
        )
        _coordinator = PermissionCoordinator(
            store=store,
            cache=PermissionCache(store),
            ui_factory=_surface.create_approval_ui,
            launcher=_launcher,
            prompter=_surface,
            on_opt_out=_opt_out,
        )
        _coordinator.start_monitoring()
        logger.info(f"Permission coordinator created for {store.config_path}")

    return _coordinator


async def _opt_out() -> None:
    """Deregister the privileged tools for the rest of this server run."""
    global _opted_out
    _opted_out = True
    logger.warning(OPTED_OUT_MESSAGE)


def _status(coordinator: PermissionCoordinator, granted: bool) -> dict[str, Any]:
    session = coordinator.last_session
    return {
        "granted": granted,
        "state": coordinator.state.value,
        "monitoring": coordinator.monitoring,
        "approval_attempt": session.attempts if session else None,
        "approval_status": session.status.value if session else None,
        "config_path": str(coordinator.store.config_path),
        "field": coordinator.store.field,
    }


@mcp.tool(annotations={"title": "Check Bypass Permission", "readOnlyHint": True})
async def check_bypass_permission(ctx: Context | None = None) -> dict[str, Any]:
    """Check whether Claude Code bypass permissions mode has been accepted.
    Cached; does not prompt the user.
    """
    coordinator = _get_coordinator(ctx)
    granted = await coordinator.check_permission()
    logger.info(f"[Permission Check] Status: {granted}")
    return _status(coordinator, granted)


@mcp.tool(annotations={"title": "Request Bypass Permission", "readOnlyHint": False})
async def request_bypass_permission(ctx: Context | None = None) -> dict[str, Any]:
    """Ensure bypass permissions mode is accepted, asking the user if needed.
    Opens a Claude Code terminal and an approval dialog; retries until
    granted or the user gives up.
    """
    if _opted_out:
        return {"granted": False, "error": OPTED_OUT_MESSAGE}

    coordinator = _get_coordinator(ctx)
    granted = await coordinator.initialize_permissions()
    return _status(coordinator, granted)


@mcp.tool(
    annotations={
        "title": "Grant Bypass Permission",
        "readOnlyHint": False,
        "destructiveHint": True,
    }
)
async def grant_bypass_permission(ctx: Context | None = None) -> dict[str, Any]:
    """Set bypassPermissionsModeAccepted in ~/.claude.json directly."""
    if _opted_out:
        return {"granted": False, "error": OPTED_OUT_MESSAGE}

    coordinator = _get_coordinator(ctx)
    success = await coordinator.grant_permission()
    result = _status(coordinator, await coordinator.check_permission())
    if not success:
        result["error"] = "Failed to write permission flag, see server log"
    return result


@mcp.tool(
    annotations={
        "title": "Reset Bypass Permission",
        "readOnlyHint": False,
        "destructiveHint": True,
    }
)
async def reset_bypass_permission(ctx: Context | None = None) -> dict[str, Any]:
    """Revoke bypass permissions mode. The approval flow starts again."""
    coordinator = _get_coordinator(ctx)
    success = await coordinator.reset_permission()
    result = _status(coordinator, await coordinator.check_permission())
    if not success:
        result["error"] = "Failed to reset permission flag, see server log"
    return result


async def _graceful_shutdown(sig: signal.Signals) -> None:
    """Handle graceful shutdown on signal.

    Args:
        sig: Signal that triggered shutdown
    """
    logger.info(f"Received {sig.name}, initiating graceful shutdown...")

    if _coordinator is not None:
        try:
            await _coordinator.dispose()
        except Exception as e:
            logger.warning(f"Error during coordinator cleanup: {e}")

    if _launcher is not None:
        try:
            await _launcher.shutdown()
        except Exception as e:
            logger.warning(f"Error closing permission terminals: {e}")

    logger.info("Graceful shutdown complete")
    sys.exit(0)


def _setup_signal_handlers() -> None:
    """Setup signal handlers for graceful shutdown.

    Uses signal.signal() to work before the event loop is running.
    The handler schedules the async shutdown task on the running event loop.
    """
    def _signal_handler(sig: int, frame: Any) -> None:
        """Synchronous signal handler that schedules async shutdown."""
        signal_enum = signal.Signals(sig)
        logger.info(f"Received {signal_enum.name}, scheduling graceful shutdown...")

        try:
            loop = asyncio.get_running_loop()
            loop.create_task(_graceful_shutdown(signal_enum))
        except RuntimeError:
            logger.warning("No event loop running, cannot schedule graceful shutdown")
            sys.exit(1)

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            signal.signal(sig, _signal_handler)
            logger.debug(f"Registered signal handler for {sig.name}")
        except (ValueError, OSError) as e:
            # Windows or other platform issues
            logger.debug(f"Signal handler for {sig.name} not supported: {e}")


def main() -> None:
    """Main entry point for MCP server."""
    # stdout carries the stdio transport, so logs go to stderr
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting Claude bypass permission server...")
    logger.info(
        f"Settings: config={settings.get_claude_config_path()}, "
        f"poll_interval={settings.poll_interval_seconds}s, "
        f"parse_retries={settings.parse_retry_attempts}"
    )

    _setup_signal_handlers()

    mcp.run(show_banner=False)


if __name__ == "__main__":
    main()
