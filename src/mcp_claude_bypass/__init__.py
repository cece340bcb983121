"""MCP Claude Bypass - gate for Claude Code bypass permissions mode.

This package lets a long-running MCP server use Claude Code's
bypassPermissions mode only after the bypassPermissionsModeAccepted flag
in ~/.claude.json is actually set.

Core pieces:
    ConfigStore reads/writes the flag and polls the file for changes,
    PermissionCache memoizes it and emits granted/revoked transitions,
    PermissionCoordinator drives the approval dialog and retry loop.

Example:
    >>> from mcp_claude_bypass.server import main
    >>> main()
"""

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = ["__version__"]
