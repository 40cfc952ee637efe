"""Retry and backoff helpers shared by reads, writes and the change feed."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from fleetsync.duration import to_seconds
from fleetsync.exceptions import is_retryable, normalize_error

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff. Delays are in milliseconds."""

    retries: int
    base_delay: int
    max_delay: int

    def delay(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (0-based)."""
        return backoff_delay(attempt, self.base_delay, self.max_delay)


def backoff_delay(attempt: int, base_delay: int, max_delay: int) -> int:
    """Return ``min(base * 2**attempt, max)`` in milliseconds."""
    return min(base_delay * 2 ** max(attempt, 0), max_delay)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep,
    resource: str = "",
    description: str = "request",
) -> T:
    """Call ``fn``, retrying network failures according to ``policy``.

    Every failure is normalized into the fleetsync taxonomy. Only
    :class:`~fleetsync.exceptions.NetworkError` is retried; anything else,
    and the last network failure, propagates.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            error = normalize_error(exc, resource=resource)
            if attempt >= policy.retries or not is_retryable(error):
                if error is exc:
                    raise
                raise error from exc
            delay = policy.delay(attempt)
            attempt += 1
            _logger.warning(
                "%s failed (%s); retry %d/%d in %dms",
                description,
                error,
                attempt,
                policy.retries,
                delay,
            )
            await sleep(to_seconds(delay))
