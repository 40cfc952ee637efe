"""Configuration for fleetsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from fleetsync.duration import parse_duration
from fleetsync.types import Duration, QueryOptions

#: Prefixes refreshed after sign-in or a role/permission change.
AUTH_KEY_PREFIXES: tuple[tuple[str, ...], ...] = (
    ("page_access",),
    ("user_roles",),
    ("user_profile",),
    ("auth_session",),
)

#: Primary business entities refreshed after major operations.
CORE_KEY_PREFIXES: tuple[tuple[str, ...], ...] = (
    ("trips",),
    ("vehicles",),
    ("drivers",),
    ("clients",),
    ("maintenance",),
    ("fuel_logs",),
)

_DURATION_FIELDS = (
    "stale_after",
    "gc_after",
    "retry_base_delay",
    "retry_max_delay",
    "gc_interval",
    "reconnect_base_delay",
    "reconnect_max_delay",
    "recent_update_window",
)


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Client configuration.

    Parameters
    ----------
    stale_after : Duration
        Default age after which cached data is considered stale.
    gc_after : Duration
        Default age after which an unobserved entry is evicted.
    refetch_on_revisit : bool
        Refetch fresh data when a consumer revisits a query.
    refetch_on_reconnect : bool
        Refetch active queries after the network comes back.
    retries : int
        Automatic retries for reads failing with a network error.
    retry_base_delay, retry_max_delay : Duration
        Exponential backoff ``min(base * 2**attempt, max)`` between retries.
    mutation_retries : int
        Automatic retries for idempotent mutations. Creates are never retried.
    gc_interval : Duration
        How often the client sweeps unobserved entries.
    reconnect_base_delay, reconnect_max_delay : Duration
        Backoff for the realtime change feed.
    recent_update_window : Duration
        How long a write counts as a "recent update".

    Duration fields are normalized to milliseconds on construction.
    """

    stale_after: Duration = "5m"
    gc_after: Duration = "30m"
    refetch_on_revisit: bool = False
    refetch_on_reconnect: bool = True
    retries: int = 1
    retry_base_delay: Duration = "1s"
    retry_max_delay: Duration = "30s"
    mutation_retries: int = 1
    gc_interval: Duration = "1m"
    reconnect_base_delay: Duration = "1s"
    reconnect_max_delay: Duration = "30s"
    recent_update_window: Duration = "30s"

    def __post_init__(self) -> None:
        for name in _DURATION_FIELDS:
            object.__setattr__(self, name, parse_duration(getattr(self, name)))
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.mutation_retries < 0:
            raise ValueError("mutation_retries must be >= 0")
        if self.gc_interval <= 0:
            raise ValueError("gc_interval must be positive")

    def default_options(self) -> QueryOptions:
        """Query options derived from this configuration."""
        return QueryOptions(
            stale_after=self.stale_after,
            gc_after=self.gc_after,
            refetch_on_revisit=self.refetch_on_revisit,
            refetch_on_reconnect=self.refetch_on_reconnect,
            retries=self.retries,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from ``FLEETSYNC_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        for name in _DURATION_FIELDS:
            val = env.get(f"FLEETSYNC_{name.upper()}")
            if val is not None:
                config_kwargs[name] = int(val) if val.isdigit() else val

        for name in ("retries", "mutation_retries"):
            val = env.get(f"FLEETSYNC_{name.upper()}")
            if val is not None:
                config_kwargs[name] = int(val)

        config_kwargs["refetch_on_revisit"] = _env_bool(
            env.get("FLEETSYNC_REFETCH_ON_REVISIT"), False
        )
        config_kwargs["refetch_on_reconnect"] = _env_bool(
            env.get("FLEETSYNC_REFETCH_ON_RECONNECT"), True
        )

        config_kwargs.update(overrides)
        return cls(**config_kwargs)
