"""Invalidation manager - grouped refresh and clearing of cache entries."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from fleetsync.adapters.base import AuthProvider
from fleetsync.cache import QueryCache, Subscription
from fleetsync.config import AUTH_KEY_PREFIXES, CORE_KEY_PREFIXES, SyncConfig
from fleetsync.events import AuthEvent, AuthEventKind
from fleetsync.executor import QueryExecutor
from fleetsync.keys import make_keys

_logger = logging.getLogger(__name__)

ReloadHook = Callable[[], Awaitable[None] | None]


class InvalidationManager:
    """Force-refresh or clear groups of cache entries by key prefix.

    One instance per client, created with it and closed with it.
    """

    def __init__(
        self,
        cache: QueryCache,
        executor: QueryExecutor,
        *,
        config: SyncConfig | None = None,
        reload: ReloadHook | None = None,
    ) -> None:
        self._cache = cache
        self._executor = executor
        self._config = config or SyncConfig()
        self._reload = reload
        self._last_update_at: int | None = None
        self._principal: str | None = None
        self._auth_subscription: Subscription | None = None

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def invalidate_and_refetch(self, keys: Iterable[Any]) -> list[Any]:
        """Mark entries under the prefixes stale and refetch the active ones.

        Entries nobody observes are only marked stale; they refetch on next
        read. Refetch failures are recorded on the entries and logged.
        Returns the refetched keys.
        """
        prefixes = make_keys(keys)
        self.mark_recent_updates()
        for prefix in prefixes:
            self._cache.invalidate(prefix)
        refetched = await self._executor.refetch_active(prefixes, force=True)
        _logger.debug("Invalidated %s, refetched %d active keys", prefixes, len(refetched))
        return refetched

    def invalidate(self, keys: Iterable[Any]) -> None:
        """Mark entries under the prefixes stale without refetching."""
        for prefix in make_keys(keys):
            self._cache.invalidate(prefix)

    async def refetch(self, keys: Iterable[Any]) -> list[Any]:
        """Refetch active entries under the prefixes without invalidating the rest."""
        return await self._executor.refetch_active(make_keys(keys), force=True)

    def clear_all_caches(self) -> None:
        """Evict everything. Used after identity changes.

        Responses still in flight are discarded when they settle.
        """
        evicted = self._cache.evict(())
        _logger.info("Cleared all caches (%d entries)", len(evicted))

    async def refresh_auth_data(self) -> list[Any]:
        """Refresh roles, permissions, profile and session queries."""
        return await self.invalidate_and_refetch(AUTH_KEY_PREFIXES)

    async def refresh_core_data(self) -> list[Any]:
        """Refresh trips, vehicles, drivers, clients, maintenance and fuel logs."""
        return await self.invalidate_and_refetch(CORE_KEY_PREFIXES)

    async def force_page_refresh(self) -> None:
        """Last resort: clear everything and reload.

        Calls the reload hook when one was given; otherwise refetches every
        active query from scratch.
        """
        _logger.warning("Forcing full refresh")
        self.clear_all_caches()
        if self._reload is not None:
            outcome = self._reload()
            if inspect.isawaitable(outcome):
                await outcome
            return
        await self._executor.refetch_active([()], force=True)

    # -------------------------------------------------------------------------
    # Recent updates
    # -------------------------------------------------------------------------

    def mark_recent_updates(self) -> None:
        """Record that data changed just now."""
        self._last_update_at = self._cache.now()

    @property
    def last_update_at(self) -> int | None:
        return self._last_update_at

    def has_recent_updates(self, within: int | None = None) -> bool:
        """Whether an update was recorded within the window (ms)."""
        if self._last_update_at is None:
            return False
        window = self._config.recent_update_window if within is None else within
        return self._cache.now() - self._last_update_at <= window  # type: ignore[operator]

    def is_recent(self, timestamp: int) -> bool:
        """Whether a record changed at ``timestamp`` (ms) counts as "just now"."""
        return self._cache.now() - timestamp <= self._config.recent_update_window  # type: ignore[operator]

    # -------------------------------------------------------------------------
    # Auth binding
    # -------------------------------------------------------------------------

    def bind_auth(self, provider: AuthProvider) -> Subscription:
        """React to auth state changes from the provider.

        Sign-out clears everything; signing in as someone else clears and
        refreshes auth data; a role change refreshes auth data.
        """
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
        session = provider.current_session()
        self._principal = session.principal if session is not None else None
        self._auth_subscription = provider.on_auth_state_change(self.handle_auth_event)
        return self._auth_subscription

    async def handle_auth_event(self, event: AuthEvent) -> None:
        if event.kind is AuthEventKind.SIGNED_OUT:
            self._principal = None
            self.clear_all_caches()
        elif event.kind is AuthEventKind.SIGNED_IN:
            if self._principal is not None and event.principal != self._principal:
                self.clear_all_caches()
            self._principal = event.principal
            await self.refresh_auth_data()
        elif event.kind is AuthEventKind.ROLE_CHANGED:
            await self.refresh_auth_data()

    def close(self) -> None:
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
            self._auth_subscription = None


__all__ = ["InvalidationManager"]
