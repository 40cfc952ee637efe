"""Sync client - owns the cache and every component around it."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from fleetsync.adapters.base import AuthProvider, ChangeFeed
from fleetsync.cache import Callback, QueryCache, Subscription
from fleetsync.config import SyncConfig
from fleetsync.exceptions import AuthError
from fleetsync.executor import QueryExecutor
from fleetsync.invalidation import InvalidationManager, ReloadHook
from fleetsync.mutations import MutationExecutor
from fleetsync.realtime import RealtimeBridge
from fleetsync.duration import to_seconds
from fleetsync.retry import Sleep
from fleetsync.types import FetchFn, QueryConfig, QueryOptions

_logger = logging.getLogger(__name__)

AuthFailureHook = Callable[[AuthError], Awaitable[None] | None]

P = ParamSpec("P")
R = TypeVar("R")


class SyncClient:
    """Client-side data layer for the fleet portal.

    Usage:
        async with SyncClient(feed=feed, auth=auth) as client:
            rows = await client.read(("maintenance",), fetch_maintenance)
            await client.mutate(add_record, [("maintenance",), ("vehicles",)])

    ``on_auth_failure`` runs after every cache has been cleared because a
    request was rejected for auth reasons; use it to sign out locally and
    redirect to the login page.
    """

    def __init__(
        self,
        *,
        config: SyncConfig | None = None,
        clock: Callable[[], int] | None = None,
        sleep: Sleep = asyncio.sleep,
        feed: ChangeFeed | None = None,
        auth: AuthProvider | None = None,
        reload: ReloadHook | None = None,
        on_auth_failure: AuthFailureHook | None = None,
    ) -> None:
        self._config = config or SyncConfig()
        self._auth = auth
        self._on_auth_failure = on_auth_failure
        cache_kwargs: dict[str, Any] = {
            "stale_after": self._config.stale_after,
            "gc_after": self._config.gc_after,
        }
        if clock is not None:
            cache_kwargs["clock"] = clock
        self._cache = QueryCache(**cache_kwargs)
        self._executor = QueryExecutor(
            self._cache,
            config=self._config,
            sleep=sleep,
            on_auth_error=self._handle_auth_error,
        )
        self._invalidation = InvalidationManager(
            self._cache, self._executor, config=self._config, reload=reload
        )
        self._mutations = MutationExecutor(
            self._invalidation,
            config=self._config,
            sleep=sleep,
            on_auth_error=self._handle_auth_error,
        )
        self._bridge = (
            RealtimeBridge(
                feed, self._invalidation, self._executor, config=self._config, sleep=sleep
            )
            if feed is not None
            else None
        )
        self._gc_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Future[Any]] = set()
        self._started = False

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def executor(self) -> QueryExecutor:
        return self._executor

    @property
    def invalidation(self) -> InvalidationManager:
        return self._invalidation

    @property
    def bridge(self) -> RealtimeBridge | None:
        return self._bridge

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the GC sweep, the realtime listener and the auth binding."""
        if self._started:
            return
        self._started = True
        self._gc_task = asyncio.get_running_loop().create_task(self._gc_loop())
        if self._bridge is not None:
            self._bridge.start()
        if self._auth is not None:
            self._invalidation.bind_auth(self._auth)
        _logger.debug("Sync client started")

    async def close(self) -> None:
        """Stop background work and drop all cached data."""
        if self._gc_task is not None:
            self._gc_task.cancel()
            await asyncio.gather(self._gc_task, return_exceptions=True)
            self._gc_task = None
        pending = list(self._background_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self._bridge is not None:
            await self._bridge.close()
        self._invalidation.close()
        await self._executor.close()
        self._cache.clear()
        self._started = False
        _logger.debug("Sync client closed")

    async def __aenter__(self) -> SyncClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read(self, key: Any, fetch_fn: FetchFn, options: QueryOptions | None = None) -> Any:
        """Return data for key from cache, or fetch it."""
        return await self._executor.read(key, fetch_fn, options)

    def watch(
        self,
        key: Any,
        fetch_fn: FetchFn,
        callback: Callback,
        options: QueryOptions | None = None,
    ) -> Subscription:
        """Observe key; see :meth:`QueryExecutor.watch`."""
        return self._executor.watch(key, fetch_fn, callback, options)

    async def refetch(self, key: Any, *, force: bool = False) -> Any:
        return await self._executor.refetch(key, force=force)

    async def revisit(self) -> list[Any]:
        """Call when the consumer comes back into view."""
        return await self._executor.revisit()

    async def reconnected(self) -> list[Any]:
        """Call when the network comes back."""
        return await self._executor.reconnected()

    def query(self, fn: Callable[P, QueryConfig[R]]) -> Callable[P, Awaitable[R]]:
        """Decorator that turns a QueryConfig factory into a cached read.

        Usage:
            @client.query
            def maintenance_for(vehicle_id: str) -> QueryConfig[list[dict]]:
                return QueryConfig(
                    key=("maintenance", {"vehicle_id": vehicle_id}),
                    fn=lambda: store.select("maintenance",
                                            filters={"vehicle_id": vehicle_id}),
                )
        """

        @wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            config = fn(*args, **kwargs)
            return await self._executor.read(config.key, config.fn, config.options)  # type: ignore[no-any-return]

        return wrapper

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mutate(
        self,
        mutation_fn: Callable[[], Awaitable[Any]],
        affected_keys: Iterable[Any] = (),
        *,
        idempotent: bool = False,
    ) -> Any:
        """Run a write, then invalidate the affected key prefixes."""
        return await self._mutations.mutate(mutation_fn, affected_keys, idempotent=idempotent)

    def mutation(
        self,
        affected: Iterable[Any] = (),
        *,
        idempotent: bool = False,
    ) -> Callable[[Callable[P, Awaitable[Any]]], Callable[P, Awaitable[Any]]]:
        """Decorator form of :meth:`mutate`."""
        return self._mutations.mutation(affected, idempotent=idempotent)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def invalidate_and_refetch(self, keys: Iterable[Any]) -> list[Any]:
        return await self._invalidation.invalidate_and_refetch(keys)

    def invalidate(self, keys: Iterable[Any]) -> None:
        self._invalidation.invalidate(keys)

    def clear_all_caches(self) -> None:
        self._invalidation.clear_all_caches()

    async def refresh_auth_data(self) -> list[Any]:
        return await self._invalidation.refresh_auth_data()

    async def refresh_core_data(self) -> list[Any]:
        return await self._invalidation.refresh_core_data()

    async def force_page_refresh(self) -> None:
        await self._invalidation.force_page_refresh()

    def mark_recent_updates(self) -> None:
        self._invalidation.mark_recent_updates()

    def has_recent_updates(self, within: int | None = None) -> bool:
        return self._invalidation.has_recent_updates(within)

    # -------------------------------------------------------------------------
    # Realtime
    # -------------------------------------------------------------------------

    async def subscribe_resource(self, resource: str) -> Subscription:
        """Listen for changes to a resource on the change feed.

        Raises:
            RuntimeError: The client was created without a change feed
        """
        if self._bridge is None:
            raise RuntimeError("SyncClient was created without a change feed")
        return await self._bridge.subscribe(resource)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _handle_auth_error(self, error: AuthError) -> None:
        _logger.warning("Auth failure on %s; clearing caches", error.resource or "request")
        self._invalidation.clear_all_caches()
        if self._on_auth_failure is None:
            return
        outcome = self._on_auth_failure(error)
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._background_tasks.add(task)
            task.add_done_callback(self._auth_failure_done)

    def _auth_failure_done(self, task: asyncio.Future[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _logger.error("Auth failure hook raised", exc_info=task.exception())

    async def _gc_loop(self) -> None:
        interval = to_seconds(self._config.gc_interval)  # type: ignore[arg-type]
        while True:
            await asyncio.sleep(interval)
            removed = self._cache.gc()
            if removed:
                _logger.debug("Collected %d unobserved entries", len(removed))


__all__ = ["SyncClient"]
