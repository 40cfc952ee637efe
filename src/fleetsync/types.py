"""Core types for the fleetsync data layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Normalized keys only hold hashable primitives and nested tuples
CacheKey = tuple[Any, ...]

Duration = str | int | timedelta  # "30s", "5m", "1m30s", ms or timedelta

FetchFn = Callable[[], Awaitable[Any]]


class EntryState(str, Enum):
    """Observable state of a cache entry."""

    FRESH = "fresh"
    STALE = "stale"
    FETCHING = "fetching"
    ERROR = "error"


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached query result with staleness and expiry metadata.

    Entries are owned by :class:`~fleetsync.cache.QueryCache`; only its
    methods mutate them.
    """

    key: CacheKey
    data: T | None
    fetched_at: int | None  # Unix timestamp ms, None until data is stored
    stale_after: int
    gc_after: int
    status: EntryState = EntryState.FRESH
    invalidated: bool = False
    error: BaseException | None = None
    updated_at: int = 0
    incarnation: int = 0  # sequence at creation
    settled_seq: int = 0  # newest sequence applied
    invalidated_seq: int = 0  # newest sequence issued when last invalidated
    pending: set[int] = field(default_factory=set)  # in-flight sequences

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    def state_at(self, now: int) -> EntryState:
        """Derive the entry state at ``now`` (ms)."""
        if self.pending or self.status is EntryState.FETCHING:
            return EntryState.FETCHING
        if self.status is EntryState.ERROR:
            return EntryState.ERROR
        if self.invalidated or self.fetched_at is None:
            return EntryState.STALE
        if now - self.fetched_at > self.stale_after:
            return EntryState.STALE
        return EntryState.FRESH

    def is_fresh(self, now: int) -> bool:
        return self.state_at(now) is EntryState.FRESH

    def last_activity(self) -> int:
        return self.fetched_at if self.fetched_at is not None else self.updated_at


@dataclass(frozen=True, slots=True)
class QueryOptions:
    """Per-query cache policy.

    Durations are normalized to milliseconds by the executor; see
    :func:`fleetsync.duration.parse_duration`.
    """

    stale_after: Duration = "5m"
    gc_after: Duration = "30m"
    refetch_on_revisit: bool = False
    refetch_on_reconnect: bool = True
    retries: int = 1
    schema: Any = None  # type validated with pydantic at the fetch boundary


@dataclass(frozen=True, slots=True)
class QueryConfig(Generic[T]):
    """Configuration returned by a function decorated with ``client.query``."""

    key: Any
    fn: Callable[[], Awaitable[T]]
    options: QueryOptions | None = None


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Result of a mutation with extra key prefixes to invalidate."""

    result: T
    invalidates: list[Any] = field(default_factory=list)
