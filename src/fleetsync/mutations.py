"""Mutation executor - writes followed by invalidation fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from functools import wraps
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from fleetsync.config import SyncConfig
from fleetsync.exceptions import AuthError, normalize_error
from fleetsync.keys import make_keys
from fleetsync.retry import RetryPolicy, Sleep, call_with_retry
from fleetsync.types import CacheKey, MutationResult

if TYPE_CHECKING:
    from fleetsync.invalidation import InvalidationManager

_logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


class MutationExecutor:
    """Runs writes against the record store and invalidates what they touch.

    On success the affected prefixes are marked stale; keys with active
    subscribers are refetched, the rest refetch lazily on next use. On
    failure nothing in the cache is touched and the error propagates.
    """

    def __init__(
        self,
        invalidation: InvalidationManager,
        *,
        config: SyncConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        on_auth_error: Callable[[AuthError], None] | None = None,
    ) -> None:
        self._invalidation = invalidation
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._on_auth_error = on_auth_error

    async def mutate(
        self,
        mutation_fn: Callable[[], Awaitable[Any]],
        affected_keys: Iterable[Any] = (),
        *,
        idempotent: bool = False,
    ) -> Any:
        """Execute a write, then invalidate the affected key prefixes.

        Args:
            mutation_fn: Async function performing the write. It may return a
                MutationResult to name extra prefixes to invalidate.
            affected_keys: Key prefixes whose entries the write changes
            idempotent: Allow one automatic retry on network failure.
                Creates must leave this False.

        Returns:
            The mutation result
        """
        affected = make_keys(affected_keys)
        resource = _resource_hint(affected)
        policy = RetryPolicy(
            retries=self._config.mutation_retries if idempotent else 0,
            base_delay=self._config.retry_base_delay,  # type: ignore[arg-type]
            max_delay=self._config.retry_max_delay,  # type: ignore[arg-type]
        )
        try:
            result = await call_with_retry(
                mutation_fn,
                policy,
                sleep=self._sleep,
                resource=resource,
                description=f"Mutation of {resource or 'records'}",
            )
        except Exception as exc:
            error = normalize_error(exc, resource=resource)
            _logger.warning("Mutation of %s failed: %s", resource or "records", error)
            if isinstance(error, AuthError) and self._on_auth_error is not None:
                self._on_auth_error(error)
            if error is exc:
                raise
            raise error from exc

        if isinstance(result, MutationResult):
            affected.extend(k for k in make_keys(result.invalidates) if k not in affected)
            result = result.result

        if affected:
            await self._invalidation.invalidate_and_refetch(affected)
        return result

    def mutation(
        self,
        affected: Iterable[Any] = (),
        *,
        idempotent: bool = False,
    ) -> Callable[[Callable[P, Awaitable[Any]]], Callable[P, Awaitable[Any]]]:
        """Decorator form of :meth:`mutate`.

        Usage:
            @client.mutation(affected=[("vehicles",)], idempotent=True)
            async def retire_vehicle(vehicle_id: str) -> dict:
                return await store.update("vehicles", {"status": "retired"},
                                          filters={"id": vehicle_id})
        """
        declared = list(affected)

        def decorator(fn: Callable[P, Awaitable[Any]]) -> Callable[P, Awaitable[Any]]:
            @wraps(fn)
            async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
                return await self.mutate(
                    lambda: fn(*args, **kwargs), declared, idempotent=idempotent
                )

            return wrapper

        return decorator


def _resource_hint(keys: list[CacheKey]) -> str:
    for k in keys:
        if k and isinstance(k[0], str):
            return k[0]
    return ""


__all__ = ["MutationExecutor"]
