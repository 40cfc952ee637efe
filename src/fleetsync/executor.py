"""Query executor - cached reads with request coalescing and retry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from pydantic import TypeAdapter

from fleetsync.cache import Callback, QueryCache, Subscription
from fleetsync.config import SyncConfig
from fleetsync.duration import parse_duration
from fleetsync.exceptions import AuthError, SyncError, normalize_error
from fleetsync.keys import is_key_prefix, make_key, make_keys, serialize_key
from fleetsync.retry import RetryPolicy, Sleep, call_with_retry
from fleetsync.types import CacheKey, EntryState, FetchFn, QueryOptions

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class _Registration:
    fetch_fn: FetchFn
    options: QueryOptions


@dataclass(frozen=True, slots=True)
class _InFlight:
    seq: int
    task: asyncio.Task[Any]


def resource_of(key: CacheKey) -> str:
    """The resource name a key belongs to (its first element)."""
    return key[0] if key and isinstance(key[0], str) else ""


class QueryExecutor:
    """Performs fetches on behalf of the cache.

    - A fresh entry resolves from cache without calling the fetch function.
    - At most one request per key is in flight; concurrent readers share it.
    - Network failures are retried with bounded exponential backoff.
    - Payloads are validated against ``options.schema`` before they are cached.
    """

    def __init__(
        self,
        cache: QueryCache,
        *,
        config: SyncConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        on_auth_error: Callable[[AuthError], None] | None = None,
    ) -> None:
        self._cache = cache
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._on_auth_error = on_auth_error
        self._in_flight: dict[CacheKey, _InFlight] = {}
        self._queries: dict[CacheKey, _Registration] = {}
        self._adapters: dict[Any, TypeAdapter[Any]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        cache.on_removed(self._drop_registrations)

    @property
    def cache(self) -> QueryCache:
        return self._cache

    def in_flight(self, key: Any) -> bool:
        """Whether a request for key is currently pending."""
        return make_key(key) in self._in_flight

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read(
        self,
        key: Any,
        fetch_fn: Callable[[], Coroutine[Any, Any, T]],
        options: QueryOptions | None = None,
    ) -> T:
        """Return data for key, fetching when the entry is stale or absent.

        Args:
            key: Cache key (normalized structurally)
            fetch_fn: Async function performing the network read
            options: Cache policy (default: derived from the client config)

        Returns:
            Cached or freshly fetched data
        """
        k = make_key(key)
        opts = self._resolve(options)
        self._queries[k] = _Registration(fetch_fn, opts)

        entry = self._cache.get(k)
        if entry is not None and entry.has_data and entry.is_fresh(self._cache.now()):
            _logger.debug("Cache hit for %s", serialize_key(k))
            return entry.data  # type: ignore[no-any-return]

        task = self._start(k, fetch_fn, opts)
        # Shielded so a cancelled reader never cancels the shared request
        return await asyncio.shield(task)  # type: ignore[no-any-return]

    async def refetch(self, key: Any, *, force: bool = False) -> Any:
        """Refetch key with its last registered fetch function.

        With ``force=True`` a new request is issued even when one is already
        in flight; the cache keeps whichever of them settles last in issue
        order. Returns None when nothing is registered for the key.
        """
        k = make_key(key)
        registration = self._queries.get(k)
        if registration is None:
            _logger.debug("No query registered for %s; skipping refetch", serialize_key(k))
            return None
        task = self._start(k, registration.fetch_fn, registration.options, force=force)
        return await asyncio.shield(task)

    async def refetch_active(
        self, prefixes: Iterable[Any] = ((),), *, force: bool = False
    ) -> list[CacheKey]:
        """Refetch every key with subscribers under the prefixes.

        Failures are recorded on the entries and logged, never raised.
        """
        return await self._refetch_where(make_keys(prefixes), lambda _: True, force=force)

    async def revisit(self) -> list[CacheKey]:
        """Refetch active queries that opted into ``refetch_on_revisit``."""
        return await self._refetch_where([()], lambda r: r.options.refetch_on_revisit)

    async def reconnected(self, *, skip: Iterable[Any] = ()) -> list[CacheKey]:
        """Refetch active queries that opted into ``refetch_on_reconnect``.

        Keys in ``skip`` were already refetched for this reconnect.
        """
        done = set(make_keys(skip))
        return await self._refetch_where(
            [()], lambda r: r.options.refetch_on_reconnect, exclude=done
        )

    def watch(
        self,
        key: Any,
        fetch_fn: FetchFn,
        callback: Callback,
        options: QueryOptions | None = None,
    ) -> Subscription:
        """Subscribe to key and make sure its data is loaded.

        The callback receives the current entry right away when one exists,
        then every subsequent change. Stale or missing data is fetched in
        the background. Must be called from a running event loop.
        """
        k = make_key(key)
        opts = self._resolve(options)
        self._queries[k] = _Registration(fetch_fn, opts)
        subscription = self._cache.subscribe(k, callback, replay=True)

        entry = self._cache.get(k)
        state = entry.state_at(self._cache.now()) if entry is not None else None
        if state is not EntryState.FRESH or opts.refetch_on_revisit:
            self._spawn(self._refetch_quietly(k, force=False))
        return subscription

    def forget(self, prefix: Any = ()) -> None:
        """Drop query registrations under prefix."""
        p = make_key(prefix)
        for k in [k for k in self._queries if is_key_prefix(p, k)]:
            del self._queries[k]

    async def close(self) -> None:
        """Cancel in-flight requests and background refetches."""
        tasks = [f.task for f in self._in_flight.values()] + list(self._background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._background_tasks.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _resolve(self, options: QueryOptions | None) -> QueryOptions:
        opts = options or self._config.default_options()
        if opts.retries < 0:
            raise ValueError("retries must be >= 0")
        return replace(
            opts,
            stale_after=parse_duration(opts.stale_after),
            gc_after=parse_duration(opts.gc_after),
        )

    def _start(
        self,
        key: CacheKey,
        fetch_fn: FetchFn,
        options: QueryOptions,
        *,
        force: bool = False,
    ) -> asyncio.Task[Any]:
        # No await between the lookup and the registration below, so two
        # readers in the same scheduling turn always coalesce
        existing = self._in_flight.get(key)
        if existing is not None and not force:
            _logger.debug("Coalescing read for %s onto #%d", serialize_key(key), existing.seq)
            return existing.task

        seq = self._cache.begin_fetch(
            key, stale_after=options.stale_after, gc_after=options.gc_after
        )
        task = asyncio.get_running_loop().create_task(
            self._run(key, seq, fetch_fn, options)
        )
        task.add_done_callback(_consume_exception)
        self._in_flight[key] = _InFlight(seq, task)
        return task

    async def _run(
        self, key: CacheKey, seq: int, fetch_fn: FetchFn, options: QueryOptions
    ) -> Any:
        resource = resource_of(key)
        policy = RetryPolicy(
            retries=options.retries,
            base_delay=self._config.retry_base_delay,  # type: ignore[arg-type]
            max_delay=self._config.retry_max_delay,  # type: ignore[arg-type]
        )
        try:
            data = await call_with_retry(
                fetch_fn,
                policy,
                sleep=self._sleep,
                resource=resource,
                description=f"Fetch of {serialize_key(key)}",
            )
            data = self._validate(data, options.schema)
        except asyncio.CancelledError:
            self._cache.abandon(key, seq)
            raise
        except Exception as exc:
            error = normalize_error(exc, resource=resource)
            self._cache.fail(key, seq, error)
            self._report(error)
            if error is exc:
                raise
            raise error from exc
        else:
            self._cache.settle(key, seq, data)
            return data
        finally:
            current = self._in_flight.get(key)
            if current is not None and current.seq == seq:
                del self._in_flight[key]

    def _validate(self, data: Any, schema: Any) -> Any:
        if schema is None:
            return data
        adapter = self._adapters.get(schema)
        if adapter is None:
            adapter = TypeAdapter(schema)
            self._adapters[schema] = adapter
        return adapter.validate_python(data)

    def _drop_registrations(self, keys: list[CacheKey]) -> None:
        # Observed keys keep theirs so they can be refetched after a clear
        for k in keys:
            if not self._cache.subscriber_count(k):
                self._queries.pop(k, None)

    def _report(self, error: SyncError) -> None:
        if isinstance(error, AuthError) and self._on_auth_error is not None:
            self._on_auth_error(error)

    async def _refetch_where(
        self,
        prefixes: list[CacheKey],
        predicate: Callable[[_Registration], bool],
        *,
        force: bool = False,
        exclude: set[CacheKey] | None = None,
    ) -> list[CacheKey]:
        keys: list[CacheKey] = []
        for prefix in prefixes:
            for k in self._cache.active_keys(prefix):
                if exclude and k in exclude:
                    continue
                registration = self._queries.get(k)
                if registration is not None and predicate(registration) and k not in keys:
                    keys.append(k)
        await asyncio.gather(*(self._refetch_quietly(k, force=force) for k in keys))
        return keys

    async def _refetch_quietly(self, key: CacheKey, *, force: bool) -> None:
        try:
            await self.refetch(key, force=force)
        except SyncError as exc:
            _logger.warning("Background refetch of %s failed: %s", serialize_key(key), exc)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Failures reach every waiter; this only silences "never retrieved"
    if not task.cancelled():
        task.exception()


__all__ = ["QueryExecutor", "resource_of"]
