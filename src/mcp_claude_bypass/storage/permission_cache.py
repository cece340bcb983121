"""Memoized view of the permission flag with transition events."""

import asyncio
import inspect
import logging
from typing import Any, Callable

from ..models.permission import PermissionTransition
from .config_store import ConfigStore

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[PermissionTransition], Any]


class Subscription:
    """Handle returned by PermissionCache.subscribe().

    Attributes:
        callback: Subscriber called with each PermissionTransition
        active: False once unsubscribed
    """

    def __init__(self, registry: list["Subscription"], callback: TransitionCallback) -> None:
        self._registry = registry
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call during delivery and more than once."""
        if not self.active:
            return
        self.active = False
        self._registry.remove(self)


class PermissionCache:
    """Caches the permission flag and decides when it changed.

    The cached value is None until the first read. get() only reads the
    store while the value is None; refresh() always reads.

    Events are emitted only for real false <-> true transitions, never
    for the first population of the cache.

    Attributes:
        store: Config store the flag is read from
    """

    def __init__(self, store: ConfigStore) -> None:
        """Initialize cache.

        Args:
            store: Config store the flag is read from
        """
        self.store = store

        self._value: bool | None = None
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()
        self._load_lock = asyncio.Lock()

    @property
    def value(self) -> bool | None:
        """Cached value without any I/O (None if never synchronized)."""
        return self._value

    def subscribe(self, callback: TransitionCallback) -> Subscription:
        """Register a transition subscriber.

        Coroutine functions are allowed; their coroutines run as
        background tasks so a slow subscriber never blocks a refresh.

        Args:
            callback: Called with a PermissionTransition on every change

        Returns:
            Subscription handle for unsubscribing
        """
        subscription = Subscription(self._subscriptions, callback)
        self._subscriptions.append(subscription)
        return subscription

    async def get(self) -> bool:
        """Get the permission flag, reading the store only on a cache miss.

        Returns:
            Cached flag value
        """
        if self._value is not None:
            return self._value

        async with self._load_lock:
            # Another caller may have populated the cache while we waited
            if self._value is not None:
                return self._value
            return await self.refresh_and_get()

    async def refresh(self) -> None:
        """Force a store read and update the cache."""
        await self.refresh_and_get()

    async def refresh_and_get(self) -> bool:
        """Force a store read, update the cache and return the new value.

        Returns:
            Flag value just read from the store
        """
        current = await self.store.read()

        # Compare against the value cached when the read completed, so
        # two overlapping refreshes cannot report the same transition twice
        previous = self._value
        self._value = current

        if previous is None:
            logger.debug(f"[PermissionCache] Initial permission state: {current}")
        elif previous != current:
            logger.info(f"[PermissionCache] Permission changed: {previous} -> {current}")
            self._emit(PermissionTransition(previous=previous, current=current))

        return current

    async def drain(self) -> None:
        """Wait for background subscriber tasks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _emit(self, transition: PermissionTransition) -> None:
        """Deliver a transition to every active subscriber."""
        kind = "granted" if transition.granted else "revoked"
        logger.info(f"[PermissionCache] Permission {kind}! Firing event.")

        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue

            try:
                result = subscription.callback(transition)
            except Exception:
                logger.exception(f"[PermissionCache] Subscriber failed on {kind} event")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_delivered)

    def _on_delivered(self, task: asyncio.Task) -> None:
        """Forget a finished subscriber task and log its failure, if any."""
        self._pending.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            logger.error(f"[PermissionCache] Async subscriber failed: {exc!r}")
