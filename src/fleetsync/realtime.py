"""Realtime bridge - change notifications to targeted invalidation.

Owns:
- the listener task reading the change feed
- reference-counted interest per resource
- reconnect with backoff, and the catch-up refresh after a reconnect

Pushed records are never merged into the cache; an event only marks the
resource's entries stale and refetches the ones being observed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pydantic

from fleetsync.adapters.base import ChangeFeed
from fleetsync.cache import Subscription
from fleetsync.config import SyncConfig
from fleetsync.duration import to_seconds
from fleetsync.events import ChangeEvent
from fleetsync.exceptions import NetworkError
from fleetsync.executor import QueryExecutor
from fleetsync.invalidation import InvalidationManager
from fleetsync.retry import Sleep, backoff_delay

_logger = logging.getLogger(__name__)


class RealtimeBridge:
    def __init__(
        self,
        feed: ChangeFeed,
        invalidation: InvalidationManager,
        executor: QueryExecutor,
        *,
        config: SyncConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._feed = feed
        self._invalidation = invalidation
        self._executor = executor
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._refcounts: dict[str, int] = {}
        self._task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._was_connected = False
        self._closing = False
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def resources(self) -> frozenset[str]:
        return frozenset(self._refcounts)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the feed is connected. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def subscribe(self, resource: str) -> Subscription:
        """Express interest in changes to a resource.

        The feed subscription is shared; it is released when the last
        handle unsubscribes.
        """
        count = self._refcounts.get(resource, 0)
        self._refcounts[resource] = count + 1
        if count == 0 and self.connected:
            try:
                await self._feed.subscribe(resource)
            except (OSError, NetworkError):
                # The listener resubscribes everything after reconnecting
                _logger.debug("Subscribing to %s failed", resource, exc_info=True)

        def detach() -> None:
            remaining = self._refcounts.get(resource, 0) - 1
            if remaining > 0:
                self._refcounts[resource] = remaining
                return
            self._refcounts.pop(resource, None)
            if self.connected:
                self._spawn(self._release(resource))

        return Subscription(detach)

    def start(self) -> None:
        """Start the listener task. Must be called from a running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.get_running_loop().create_task(self._listen())
        self._task.add_done_callback(self._listener_done)

    async def close(self) -> None:
        """Stop listening and disconnect from the feed."""
        self._closing = True
        tasks = list(self._background_tasks)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._connected.clear()
        await self._feed.disconnect()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _listen(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                await self._feed.connect()
                await self._subscribe_all()
                self._connected.set()
                attempt = 0
                if self._was_connected:
                    await self._catch_up()
                self._was_connected = True
                _logger.debug("Change feed connected (%d resources)", len(self._refcounts))

                async for event in self._feed.events():
                    await self._handle(event)

                self._connected.clear()
                if self._closing:
                    return
                raise ConnectionError("change feed closed unexpectedly")
            except (OSError, NetworkError) as exc:
                self._connected.clear()
                if self._closing:
                    return
                delay = backoff_delay(
                    attempt,
                    self._config.reconnect_base_delay,  # type: ignore[arg-type]
                    self._config.reconnect_max_delay,  # type: ignore[arg-type]
                )
                attempt += 1
                _logger.warning(
                    "Change feed connection lost (%s); reconnecting in %dms", exc, delay
                )
                await self._sleep(to_seconds(delay))

    async def _subscribe_all(self) -> None:
        # Interest added while an earlier subscribe was awaiting is picked up
        # by the next pass; the last pass ends with no await before returning
        subscribed: set[str] = set()
        while True:
            missing = [r for r in self._refcounts if r not in subscribed]
            if not missing:
                break
            for resource in missing:
                await self._feed.subscribe(resource)
                subscribed.add(resource)
        for resource in subscribed - set(self._refcounts):
            self._spawn(self._release(resource))

    async def _handle(self, event: Any) -> None:
        if not isinstance(event, ChangeEvent):
            try:
                event = ChangeEvent.model_validate(event)
            except pydantic.ValidationError:
                _logger.warning("Skipping malformed change event: %r", event, exc_info=True)
                return
        if event.resource not in self._refcounts:
            _logger.debug("Ignoring change to unobserved resource %s", event.resource)
            return
        _logger.debug("%s on %s; invalidating", event.operation.value, event.resource)
        await self._invalidation.invalidate_and_refetch([(event.resource,)])

    async def _catch_up(self) -> None:
        # Events may have been missed during the gap
        resources = list(self._refcounts)
        _logger.info("Change feed reconnected; refreshing %d resources", len(resources))
        refetched: list[Any] = []
        if resources:
            refetched = await self._invalidation.invalidate_and_refetch([(r,) for r in resources])
        await self._executor.reconnected(skip=refetched)

    async def _release(self, resource: str) -> None:
        if resource in self._refcounts:
            return
        try:
            await self._feed.unsubscribe(resource)
        except (OSError, NetworkError):
            _logger.debug("Unsubscribing from %s failed", resource, exc_info=True)

    def _listener_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._connected.clear()
            _logger.error("Change feed listener stopped", exc_info=exc)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


__all__ = ["RealtimeBridge"]
