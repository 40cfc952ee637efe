"""Shared pytest fixtures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from fleetsync import QueryCache, QueryExecutor, SyncClient, SyncConfig


class ManualClock:
    """Clock returning a settable time in milliseconds."""

    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Sleep replacement that records delays and only yields to the loop."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class Fetcher:
    """Fetch function returning (or raising) queued results and counting calls.

    The last result repeats once the queue is exhausted. When ``gate`` is set,
    each call waits for it before answering.
    """

    def __init__(self, *results: Any, gated: bool = False) -> None:
        self.results = list(results) or [None]
        self.calls = 0
        self.gate: asyncio.Event | None = asyncio.Event() if gated else None

    async def __call__(self) -> Any:
        self.calls += 1
        index = min(self.calls - 1, len(self.results) - 1)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results[index]
        if isinstance(result, BaseException):
            raise result
        return result

    def release(self) -> None:
        assert self.gate is not None
        self.gate.set()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_fetcher() -> type[Fetcher]:
    return Fetcher


@pytest.fixture
def drain() -> Callable[[], Awaitable[None]]:
    """Let background tasks run until they block."""

    async def run(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return run


@pytest.fixture
def cache(clock: ManualClock) -> QueryCache:
    """Create a fresh QueryCache on the manual clock."""
    return QueryCache(clock=clock)


@pytest.fixture
async def executor(cache: QueryCache, sleep: RecordingSleep):
    """Create a QueryExecutor with instant retry sleeps."""
    executor = QueryExecutor(cache, config=SyncConfig(), sleep=sleep)
    yield executor
    await executor.close()


@pytest.fixture
async def client(clock: ManualClock, sleep: RecordingSleep):
    """Create a SyncClient without a change feed or auth provider."""
    client = SyncClient(clock=clock, sleep=sleep)
    yield client
    await client.close()


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Yield to the loop until a condition holds, then assert it."""

    async def check(predicate: Callable[[], bool], rounds: int = 200) -> None:
        for _ in range(rounds):
            if predicate():
                return
            await asyncio.sleep(0)
        assert predicate()

    return check
