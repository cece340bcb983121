"""Reader/writer for the permission flag in the shared Claude Code config.

The config file (~/.claude.json by default) belongs to Claude Code. We only
ever touch a single boolean field and keep every other field as-is.
"""

import asyncio
import inspect
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

PERMISSION_FIELD = "bypassPermissionsModeAccepted"
DEFAULT_POLL_INTERVAL = 2.0  # seconds
DEFAULT_PARSE_RETRY_ATTEMPTS = 2
DEFAULT_PARSE_RETRY_DELAY = 0.1  # seconds

WatchCallback = Callable[[], Awaitable[None] | None]


class ConfigWriteError(Exception):
    """Raised when the permission flag cannot be written to disk."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{message}: {path}")
        self.path = path


class WatchRegistrationError(Exception):
    """Raised when the config file watch cannot be started."""


class ConfigStore:
    """Sole point of contact with the shared config file.

    Reads never raise: a missing, unreadable or corrupt file means the
    flag is not set. Writes are serialized and always merge into the
    latest on-disk document.

    Change detection polls the file's modification time instead of
    relying on native filesystem events.

    Attributes:
        config_path: Path to the shared JSON config file
        field: Name of the boolean permission field
        poll_interval: Seconds between modification-time checks
        parse_retry_attempts: Extra parse attempts on a corrupt document
        parse_retry_delay: Seconds to wait before re-reading a corrupt document
    """

    def __init__(
        self,
        config_path: Path,
        field: str = PERMISSION_FIELD,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        parse_retry_attempts: int = DEFAULT_PARSE_RETRY_ATTEMPTS,
        parse_retry_delay: float = DEFAULT_PARSE_RETRY_DELAY,
    ) -> None:
        """Initialize config store.

        Args:
            config_path: Path to the shared JSON config file
            field: Name of the boolean permission field
            poll_interval: Seconds between modification-time checks
            parse_retry_attempts: Extra parse attempts on a corrupt document
            parse_retry_delay: Seconds to wait before re-reading a corrupt document
        """
        self.config_path = config_path
        self.field = field
        self.poll_interval = poll_interval
        self.parse_retry_attempts = parse_retry_attempts
        self.parse_retry_delay = parse_retry_delay

        self._write_lock = asyncio.Lock()
        self._watch_task: asyncio.Task | None = None

    @property
    def watching(self) -> bool:
        """True while a poll task is running."""
        return self._watch_task is not None and not self._watch_task.done()

    async def read(self) -> bool:
        """Read the permission flag.

        Returns:
            True only if the file holds a JSON object whose flag field is
            exactly true; False otherwise (including on any read error)
        """
        try:
            content = await asyncio.to_thread(self.config_path.read_text, encoding="utf-8")
            config = json.loads(content)
        except FileNotFoundError:
            logger.debug(f"[ConfigStore] Config file not found: {self.config_path}")
            return False
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"[ConfigStore] Error reading config {self.config_path}: {e}")
            return False

        if not isinstance(config, dict):
            logger.warning(
                f"[ConfigStore] Config is not a JSON object ({type(config).__name__}), "
                f"treating {self.field} as false"
            )
            return False

        return config.get(self.field) is True

    async def write(self, value: bool) -> None:
        """Set the permission flag, preserving every other field.

        Args:
            value: New flag value

        Raises:
            ConfigWriteError: If the existing file cannot be read or the
                new document cannot be written
        """
        async with self._write_lock:
            config = await self._load_for_update()
            config[self.field] = value

            # The worker thread cannot be interrupted, so the lock is held
            # until it finishes even when this write is cancelled
            save = asyncio.ensure_future(asyncio.to_thread(self._save, config))
            try:
                await asyncio.shield(save)
            except asyncio.CancelledError:
                await asyncio.wait({save})
                if not save.cancelled() and save.exception() is not None:
                    logger.error(f"[ConfigStore] Cancelled write of {self.field} failed: {save.exception()}")
                raise
            except OSError as e:
                logger.error(f"[ConfigStore] Failed to set {self.field}={value}: {e}")
                raise ConfigWriteError(self.config_path, f"Cannot write config ({e})") from e

        logger.info(f"[ConfigStore] Set {self.field} to {value}")

    def watch(self, callback: WatchCallback) -> None:
        """Start polling the config file for modification-time changes.

        The callback fires once per detected change. There is no
        debouncing; callers that need it must add their own. A second
        call replaces the previous watch.

        Args:
            callback: Sync or async function called on each change

        Raises:
            WatchRegistrationError: If no event loop is running
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise WatchRegistrationError(
                f"Cannot watch {self.config_path} without a running event loop"
            ) from e

        if self._watch_task is not None:
            self._watch_task.cancel()

        self._watch_task = loop.create_task(self._poll(callback, self._mtime()))
        logger.info(
            f"[ConfigStore] Started watching config file: {self.config_path} "
            f"(every {self.poll_interval}s)"
        )

    def dispose(self) -> None:
        """Stop watching the config file. Safe to call more than once."""
        if self._watch_task is None:
            return

        self._watch_task.cancel()
        self._watch_task = None
        logger.info("[ConfigStore] Stopped watching config file")

    async def _poll(self, callback: WatchCallback, last_mtime: int) -> None:
        """Poll loop comparing modification times against the registration baseline."""
        while True:
            await asyncio.sleep(self.poll_interval)

            current_mtime = self._mtime()
            if current_mtime == last_mtime:
                continue
            last_mtime = current_mtime

            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[ConfigStore] Watch callback failed")

    def _mtime(self) -> int:
        """Modification time in nanoseconds, 0 if the file is missing."""
        try:
            return self.config_path.stat().st_mtime_ns
        except OSError:
            return 0

    async def _load_for_update(self) -> dict[str, Any]:
        """Load the current document for a read-merge-write update.

        A corrupt document is re-read up to parse_retry_attempts more
        times, since another writer may be halfway through saving it.
        After that we start from an empty document.

        Raises:
            ConfigWriteError: If the file exists but cannot be read
        """
        for attempt in range(self.parse_retry_attempts + 1):
            try:
                content = await asyncio.to_thread(self.config_path.read_text, encoding="utf-8")
                config = json.loads(content)
            except FileNotFoundError:
                return {}
            except OSError as e:
                logger.error(f"[ConfigStore] Cannot read existing config: {e}")
                raise ConfigWriteError(self.config_path, f"Cannot read config ({e})") from e
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(
                    f"[ConfigStore] Failed to parse existing config "
                    f"(attempt {attempt + 1}/{self.parse_retry_attempts + 1}): {e}"
                )
            else:
                if isinstance(config, dict):
                    return config
                logger.warning(
                    f"[ConfigStore] Existing config is not a JSON object "
                    f"(attempt {attempt + 1}/{self.parse_retry_attempts + 1})"
                )

            if attempt < self.parse_retry_attempts:
                await asyncio.sleep(self.parse_retry_delay)

        logger.warning("[ConfigStore] All parse attempts failed, using empty config object")
        return {}

    def _save(self, config: dict[str, Any]) -> None:
        """Write the document with 2-space indentation."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2, ensure_ascii=False)
