"""Protocols for the external collaborators of the data layer."""

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from fleetsync.cache import Subscription
from fleetsync.events import AuthEvent, AuthEventKind, ChangeEvent, Session

Filters = Mapping[str, Any]
Order = tuple[str, bool] | Sequence[tuple[str, bool]]  # (column, ascending)
Record = dict[str, Any]

AuthCallback = Callable[[AuthEvent], Awaitable[None]]


@runtime_checkable
class RecordStore(Protocol):
    """Remote record store with per-resource reads and writes."""

    async def select(
        self,
        resource: str,
        *,
        columns: str = "*",
        filters: Filters | None = None,
        order: Order | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Record]:
        """Read rows of a resource."""
        ...

    async def insert(self, resource: str, values: Record | Sequence[Record]) -> list[Record]:
        """Insert one or more rows and return them."""
        ...

    async def update(self, resource: str, values: Record, *, filters: Filters) -> list[Record]:
        """Update matching rows and return them."""
        ...

    async def delete(self, resource: str, *, filters: Filters) -> list[Record]:
        """Delete matching rows and return them."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Change notifications keyed by resource name."""

    async def connect(self) -> None:
        """Open the connection. Raises ConnectionError when unreachable."""
        ...

    async def subscribe(self, resource: str) -> None:
        """Start receiving events for a resource."""
        ...

    async def unsubscribe(self, resource: str) -> None:
        """Stop receiving events for a resource."""
        ...

    def events(self) -> AsyncIterator[ChangeEvent]:
        """Iterate events. Raises ConnectionError when the connection drops."""
        ...

    async def disconnect(self) -> None:
        """Close the connection."""
        ...


@runtime_checkable
class AuthProvider(Protocol):
    """Session lookup and auth state notifications."""

    def current_session(self) -> Session | None:
        """The current session, if signed in."""
        ...

    def on_auth_state_change(self, callback: AuthCallback) -> Subscription:
        """Register a callback for auth events."""
        ...


__all__ = [
    "AuthCallback",
    "AuthEvent",
    "AuthEventKind",
    "AuthProvider",
    "ChangeEvent",
    "ChangeFeed",
    "Filters",
    "Order",
    "Record",
    "RecordStore",
    "Session",
]
