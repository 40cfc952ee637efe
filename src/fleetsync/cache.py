"""QueryCache - keyed storage of fetched results.

Provides:
- get(), set(): Raw entry access
- invalidate(): Mark entries stale by key prefix, keeping data
- evict(): Remove entries by key prefix
- gc(): Drop unobserved entries past their gc window
- subscribe(): Observer registration returning an unsubscribe handle
- begin_fetch(), settle(), fail(): Settlement API used by the executor

All methods are synchronous. Each one is a single uninterrupted step on the
event loop, so no locking is needed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from fleetsync.duration import parse_duration
from fleetsync.keys import is_key_prefix, make_key, serialize_key
from fleetsync.types import CacheEntry, CacheKey, Duration, EntryState

_logger = logging.getLogger(__name__)

Callback = Callable[[CacheEntry[Any] | None], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe()`` to detach."""

    __slots__ = ("_active", "_detach")

    def __init__(self, detach: Callable[[], None]) -> None:
        self._detach = detach
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._detach()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class QueryCache:
    """In-process cache of query results keyed by structural cache keys.

    Usage:
        cache = QueryCache(stale_after="5m", gc_after="30m")
        cache.set(("vehicles",), vehicles)
        cache.invalidate(("vehicles",))      # every key starting with "vehicles"
        cache.evict(())                      # everything
    """

    def __init__(
        self,
        *,
        clock: Callable[[], int] = _now_ms,
        stale_after: Duration = "5m",
        gc_after: Duration = "30m",
    ) -> None:
        self._clock = clock
        self._stale_after = parse_duration(stale_after)
        self._gc_after = parse_duration(gc_after)
        self._entries: dict[CacheKey, CacheEntry[Any]] = {}
        self._subscribers: dict[CacheKey, list[Callback]] = {}
        self._removal_listeners: list[Callable[[list[CacheKey]], None]] = []
        self._seq = 0

    def now(self) -> int:
        """Current time (ms) according to the cache clock."""
        return self._clock()

    # -------------------------------------------------------------------------
    # Entry access
    # -------------------------------------------------------------------------

    def get(self, key: Any) -> CacheEntry[Any] | None:
        """Get the entry for a key, or None when absent."""
        return self._entries.get(make_key(key))

    def state(self, key: Any, now: int | None = None) -> EntryState | None:
        """State of the entry for a key, or None when absent."""
        entry = self.get(key)
        if entry is None:
            return None
        return entry.state_at(self._clock() if now is None else now)

    def set(
        self,
        key: Any,
        data: Any,
        now: int | None = None,
        *,
        stale_after: Duration | None = None,
        gc_after: Duration | None = None,
    ) -> CacheEntry[Any]:
        """Overwrite the data for a key, resetting freshness and error state.

        A manual set counts as the newest settlement, so responses issued
        before it are discarded when they arrive.
        """
        k = make_key(key)
        now = self._clock() if now is None else now
        self._seq += 1
        entry = self._entry_for(k, now, stale_after, gc_after)
        self._apply(entry, data, now, self._seq)
        self._notify(k, entry)
        return entry

    def invalidate(self, prefix: Any) -> list[CacheKey]:
        """Mark every entry under the prefix stale, keeping its data."""
        now = self._clock()
        matched = self._matching(make_key(prefix))
        for k in matched:
            entry = self._entries[k]
            entry.invalidated = True
            entry.invalidated_seq = self._seq
            entry.updated_at = now
            self._notify(k, entry)
        if matched:
            _logger.debug("Invalidated %d entries under %r", len(matched), prefix)
        return matched

    def evict(self, prefix: Any) -> list[CacheKey]:
        """Remove every entry under the prefix. ``evict(())`` removes all.

        Subscribers stay registered and are notified with None.
        """
        matched = self._matching(make_key(prefix))
        for k in matched:
            del self._entries[k]
            self._notify(k, None)
        if matched:
            _logger.debug("Evicted %d entries under %r", len(matched), prefix)
            self._removed(matched)
        return matched

    def clear(self) -> list[CacheKey]:
        """Evict every entry."""
        return self.evict(())

    def gc(self, now: int | None = None) -> list[CacheKey]:
        """Evict unobserved, idle entries older than their gc window."""
        now = self._clock() if now is None else now
        expired = [
            k
            for k, entry in self._entries.items()
            if not self._subscribers.get(k)
            and not entry.pending
            and now - entry.last_activity() > entry.gc_after
        ]
        for k in expired:
            del self._entries[k]
        if expired:
            _logger.debug("Garbage collected %d entries", len(expired))
            self._removed(expired)
        return expired

    def keys(self, prefix: Any = ()) -> list[CacheKey]:
        """Keys of stored entries under the prefix."""
        return self._matching(make_key(prefix))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        try:
            return make_key(key) in self._entries
        except TypeError:
            return False

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, key: Any, callback: Callback, *, replay: bool = False) -> Subscription:
        """Register a callback invoked with the entry on every state change.

        With ``replay=True`` the callback also receives the current entry
        right away, when one exists.
        """
        k = make_key(key)
        self._subscribers.setdefault(k, []).append(callback)
        self.gc()
        entry = self._entries.get(k)
        if replay and entry is not None:
            self._invoke(k, callback, entry)

        def detach() -> None:
            callbacks = self._subscribers.get(k)
            if callbacks is None:
                return
            for i, cb in enumerate(callbacks):
                if cb is callback:
                    del callbacks[i]
                    break
            if not callbacks:
                del self._subscribers[k]
            self.gc()

        return Subscription(detach)

    def subscriber_count(self, key: Any) -> int:
        return len(self._subscribers.get(make_key(key), ()))

    def active_keys(self, prefix: Any = ()) -> list[CacheKey]:
        """Keys with at least one subscriber under the prefix."""
        p = make_key(prefix)
        return [k for k, cbs in self._subscribers.items() if cbs and is_key_prefix(p, k)]

    def on_removed(self, listener: Callable[[list[CacheKey]], None]) -> None:
        """Call ``listener`` with the keys of entries removed by evict or gc."""
        self._removal_listeners.append(listener)

    # -------------------------------------------------------------------------
    # Settlement (used by the executor)
    # -------------------------------------------------------------------------

    def begin_fetch(
        self,
        key: Any,
        *,
        stale_after: Duration | None = None,
        gc_after: Duration | None = None,
    ) -> int:
        """Record the start of a request for key and return its sequence."""
        k = make_key(key)
        now = self._clock()
        self._seq += 1
        entry = self._entry_for(k, now, stale_after, gc_after)
        entry.pending.add(self._seq)
        entry.status = EntryState.FETCHING
        entry.updated_at = now
        self._notify(k, entry)
        return self._seq

    def settle(self, key: Any, seq: int, data: Any, now: int | None = None) -> bool:
        """Apply a successful response. Returns False when it was discarded."""
        k = make_key(key)
        entry = self._owning_entry(k, seq)
        if entry is None:
            return False
        entry.pending.discard(seq)
        if seq < entry.settled_seq:
            _logger.debug(
                "Discarding response #%d for %s; #%d already settled",
                seq,
                serialize_key(k),
                entry.settled_seq,
            )
            self._restore_status(entry)
            self._notify(k, entry)
            return False
        self._apply(entry, data, self._clock() if now is None else now, seq)
        self._notify(k, entry)
        return True

    def fail(self, key: Any, seq: int, error: BaseException) -> bool:
        """Record a terminal failure. Data is kept; the error is never cached as data."""
        k = make_key(key)
        entry = self._owning_entry(k, seq)
        if entry is None:
            return False
        entry.pending.discard(seq)
        if seq < entry.settled_seq:
            self._restore_status(entry)
            self._notify(k, entry)
            return False
        entry.error = error
        entry.settled_seq = seq
        entry.updated_at = self._clock()
        entry.status = EntryState.FETCHING if entry.pending else EntryState.ERROR
        self._notify(k, entry)
        return True

    def abandon(self, key: Any, seq: int) -> None:
        """Forget a request that was cancelled before it settled."""
        k = make_key(key)
        entry = self._entries.get(k)
        if entry is None or seq not in entry.pending:
            return
        entry.pending.discard(seq)
        self._restore_status(entry)
        self._notify(k, entry)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _entry_for(
        self,
        key: CacheKey,
        now: int,
        stale_after: Duration | None,
        gc_after: Duration | None,
    ) -> CacheEntry[Any]:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key,
                data=None,
                fetched_at=None,
                stale_after=self._stale_after,
                gc_after=self._gc_after,
                updated_at=now,
                incarnation=self._seq,
            )
            self._entries[key] = entry
        if stale_after is not None:
            entry.stale_after = parse_duration(stale_after)
        if gc_after is not None:
            entry.gc_after = parse_duration(gc_after)
        return entry

    def _owning_entry(self, key: CacheKey, seq: int) -> CacheEntry[Any] | None:
        entry = self._entries.get(key)
        if entry is None or seq < entry.incarnation:
            # Request began before an eviction; its result must not resurface
            _logger.debug("Dropping response #%d for evicted %s", seq, serialize_key(key))
            return None
        return entry

    def _apply(self, entry: CacheEntry[Any], data: Any, now: int, seq: int) -> None:
        entry.data = data
        entry.fetched_at = now
        entry.updated_at = now
        # Requests issued before the last invalidation cannot make the entry fresh
        entry.invalidated = seq <= entry.invalidated_seq
        entry.error = None
        entry.settled_seq = seq
        entry.status = EntryState.FETCHING if entry.pending else EntryState.FRESH

    @staticmethod
    def _restore_status(entry: CacheEntry[Any]) -> None:
        if entry.pending:
            entry.status = EntryState.FETCHING
        elif entry.error is not None:
            entry.status = EntryState.ERROR
        else:
            entry.status = EntryState.FRESH

    def _matching(self, prefix: CacheKey) -> list[CacheKey]:
        return [k for k in self._entries if is_key_prefix(prefix, k)]

    def _notify(self, key: CacheKey, entry: CacheEntry[Any] | None) -> None:
        for callback in list(self._subscribers.get(key, ())):
            self._invoke(key, callback, entry)

    @staticmethod
    def _invoke(key: CacheKey, callback: Callback, entry: CacheEntry[Any] | None) -> None:
        try:
            callback(entry)
        except Exception:
            _logger.warning(
                "Subscriber callback for %s failed", serialize_key(key), exc_info=True
            )

    def _removed(self, keys: list[CacheKey]) -> None:
        for listener in self._removal_listeners:
            listener(keys)


__all__ = ["QueryCache", "Subscription"]
