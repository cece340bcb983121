"""Configuration settings for the Claude bypass-permission server."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the
    MCP_CLAUDE_BYPASS_ prefix.

    Examples:
        >>> settings = Settings()
        >>> settings.permission_field
        'bypassPermissionsModeAccepted'
    """

    model_config = SettingsConfigDict(env_prefix="MCP_CLAUDE_BYPASS_")

    # Claude Code CLI
    claude_code_path: str = "claude"

    # Shared Claude Code config file and the flag inside it
    claude_config_path: str = "~/.claude.json"
    permission_field: str = "bypassPermissionsModeAccepted"

    # Change detection (mtime polling)
    poll_interval_seconds: float = Field(default=2.0, gt=0)

    # Corrupt document handling on write
    parse_retry_attempts: int = Field(default=2, ge=0)
    parse_retry_delay_seconds: float = Field(default=0.1, ge=0)

    # Visible terminal used for the permission setup session
    terminal_command: str = "x-terminal-emulator -e"

    # Workspace
    workspace_root: str = ""  # Defaults to $WORKSPACE_ROOT

    # Logging
    log_level: str = "INFO"

    def get_claude_config_path(self) -> Path:
        """Get expanded Claude Code config path.

        Returns:
            Absolute path to the shared config JSON file
        """
        return Path(self.claude_config_path).expanduser()
