"""In-memory record store, change feed and auth provider."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Sequence
from typing import Any

from fleetsync.adapters.base import AuthCallback, Filters, Order, Record
from fleetsync.cache import Subscription
from fleetsync.events import AuthEvent, AuthEventKind, ChangeEvent, Operation, Session
from fleetsync.exceptions import ValidationError

_DROP = object()
_CLOSE = object()


def _matches(row: Record, filters: Filters | None) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


def _normalize_order(order: Order | None) -> list[tuple[str, bool]]:
    if order is None:
        return []
    if isinstance(order, tuple) and len(order) == 2 and isinstance(order[1], bool):
        return [order]  # type: ignore[list-item]
    return list(order)  # type: ignore[arg-type]


def _project(row: Record, columns: str) -> Record:
    if columns.strip() == "*":
        return copy.deepcopy(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: copy.deepcopy(row[c]) for c in wanted if c in row}


class MemoryChangeFeed:
    """In-process change feed.

    Events published while disconnected, or for resources nobody
    subscribed to, are lost, as they would be on a real connection.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._resources: set[str] = set()
        self._connected = False
        self._pending_failures = 0
        self.connect_count = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def resources(self) -> frozenset[str]:
        return frozenset(self._resources)

    def fail_connects(self, times: int) -> None:
        """Make the next ``times`` connection attempts fail."""
        self._pending_failures = times

    async def connect(self) -> None:
        if self._pending_failures > 0:
            self._pending_failures -= 1
            raise ConnectionError("change feed unavailable")
        self._queue = asyncio.Queue()
        self._resources.clear()  # subscriptions do not survive a reconnect
        self._connected = True
        self.connect_count += 1

    async def subscribe(self, resource: str) -> None:
        self._resources.add(resource)

    async def unsubscribe(self, resource: str) -> None:
        self._resources.discard(resource)

    async def events(self) -> AsyncIterator[ChangeEvent]:
        queue = self._queue
        while True:
            item = await queue.get()
            if item is _DROP:
                raise ConnectionError("change feed connection dropped")
            if item is _CLOSE:
                return
            yield item

    async def disconnect(self) -> None:
        self._connected = False
        self._queue.put_nowait(_CLOSE)

    def publish(self, event: ChangeEvent) -> bool:
        """Deliver an event to listeners. Returns False when it was lost."""
        if not self._connected or event.resource not in self._resources:
            return False
        self._queue.put_nowait(event)
        return True

    def drop(self) -> None:
        """Simulate a dropped connection."""
        self._connected = False
        self._queue.put_nowait(_DROP)


class MemoryRecordStore:
    """In-memory record store with auto-incrementing ids.

    Writes publish change events to ``feed`` when one is given.
    """

    def __init__(
        self,
        *,
        feed: MemoryChangeFeed | None = None,
        id_column: str = "id",
    ) -> None:
        self._tables: dict[str, dict[Any, Record]] = {}
        self._next_id: dict[str, int] = {}
        self._feed = feed
        self._id_column = id_column
        self._lock = asyncio.Lock()

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
        async with self._lock:
            rows = [r for r in self._tables.get(resource, {}).values() if _matches(r, filters)]
            # Stable sorts applied from the least significant column
            for column, ascending in reversed(_normalize_order(order)):
                rows.sort(
                    key=lambda r, c=column: (r.get(c) is None, r.get(c)),
                    reverse=not ascending,
                )
            start = offset or 0
            end = start + limit if limit is not None else None
            return [_project(r, columns) for r in rows[start:end]]

    async def insert(self, resource: str, values: Record | Sequence[Record]) -> list[Record]:
        rows = [values] if isinstance(values, dict) else list(values)
        async with self._lock:
            table = self._tables.setdefault(resource, {})
            inserted: list[Record] = []
            for values_row in rows:
                row = copy.deepcopy(values_row)
                if self._id_column not in row:
                    self._next_id[resource] = self._next_id.get(resource, 0) + 1
                    row[self._id_column] = self._next_id[resource]
                row_id = row[self._id_column]
                if row_id in table:
                    raise ValidationError(
                        f"Duplicate {self._id_column} {row_id!r}", resource=resource, status_code=409
                    )
                table[row_id] = row
                inserted.append(copy.deepcopy(row))
        for row in inserted:
            self._publish(resource, Operation.INSERT, row, {})
        return inserted

    async def update(self, resource: str, values: Record, *, filters: Filters) -> list[Record]:
        if not filters:
            raise ValidationError("update requires filters", resource=resource)
        changed: list[tuple[Record, Record]] = []
        async with self._lock:
            for row in self._tables.get(resource, {}).values():
                if _matches(row, filters):
                    old = copy.deepcopy(row)
                    row.update(copy.deepcopy(values))
                    changed.append((copy.deepcopy(row), old))
        for new, old in changed:
            self._publish(resource, Operation.UPDATE, new, old)
        return [new for new, _ in changed]

    async def delete(self, resource: str, *, filters: Filters) -> list[Record]:
        if not filters:
            raise ValidationError("delete requires filters", resource=resource)
        async with self._lock:
            table = self._tables.get(resource, {})
            doomed = [k for k, row in table.items() if _matches(row, filters)]
            removed = [table.pop(k) for k in doomed]
        for row in removed:
            self._publish(resource, Operation.DELETE, {}, row)
        return removed

    async def close(self) -> None:
        """No-op for memory."""
        pass

    def _publish(self, resource: str, operation: Operation, record: Record, old: Record) -> None:
        if self._feed is None:
            return
        self._feed.publish(
            ChangeEvent(resource=resource, operation=operation, record=record, old_record=old)
        )


class MemoryAuthProvider:
    """Auth provider holding a single in-process session."""

    def __init__(self, session: Session | None = None) -> None:
        self._session = session
        self._callbacks: list[AuthCallback] = []

    def current_session(self) -> Session | None:
        return self._session

    def on_auth_state_change(self, callback: AuthCallback) -> Subscription:
        self._callbacks.append(callback)

        def detach() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return Subscription(detach)

    async def sign_in(self, principal: str, *, roles: Sequence[str] = ()) -> Session:
        self._session = Session(principal=principal, roles=tuple(roles))
        await self._emit(AuthEvent(kind=AuthEventKind.SIGNED_IN, principal=principal))
        return self._session

    async def sign_out(self) -> None:
        principal = self._session.principal if self._session is not None else None
        self._session = None
        await self._emit(AuthEvent(kind=AuthEventKind.SIGNED_OUT, principal=principal))

    async def change_roles(self, roles: Sequence[str]) -> None:
        if self._session is None:
            raise ValidationError("No active session")
        self._session = self._session.model_copy(update={"roles": tuple(roles)})
        await self._emit(
            AuthEvent(kind=AuthEventKind.ROLE_CHANGED, principal=self._session.principal)
        )

    async def refresh_token(self) -> None:
        principal = self._session.principal if self._session is not None else None
        await self._emit(AuthEvent(kind=AuthEventKind.TOKEN_REFRESHED, principal=principal))

    async def _emit(self, event: AuthEvent) -> None:
        for callback in list(self._callbacks):
            await callback(event)
