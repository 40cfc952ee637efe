"""Resource bindings - canonical keys and CRUD for fleet record types."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from fleetsync.adapters.base import Filters, Order, Record, RecordStore
from fleetsync.types import CacheKey, QueryOptions

if TYPE_CHECKING:
    from fleetsync.client import SyncClient

M = TypeVar("M")


class Resource(Generic[M]):
    """A named record type bound to a record store.

    Keys start with the resource name, so invalidating ``(name,)`` reaches
    every list and detail query of the resource.

    Usage:
        maintenance = Resource("maintenance", store, default_order=("date", False),
                               related=("spare_parts", "vehicles"))
        rows = await maintenance.list(client, filters={"vehicle_id": 7})
        await maintenance.insert(client, {"vehicle_id": 7, "date": "2026-01-02"})
    """

    def __init__(
        self,
        name: str,
        store: RecordStore,
        model: type[M] | None = None,
        *,
        default_order: Order | None = None,
        related: Sequence[str] = (),
        id_column: str = "id",
    ) -> None:
        if not name:
            raise ValueError("Resource name must not be empty")
        self.name = name
        self.store = store
        self.model = model
        self.default_order = default_order
        self.related = tuple(related)
        self.id_column = id_column

    def __repr__(self) -> str:
        return f"Resource({self.name!r})"

    def key(self, **params: Any) -> CacheKey:
        """Cache key for a query over this resource.

        Parameters that are None are left out, so ``key()`` and
        ``key(filters=None)`` name the same entry.
        """
        given = {k: v for k, v in params.items() if v is not None}
        if not given:
            return (self.name,)
        return (self.name, given)

    def detail_key(self, record_id: Any) -> CacheKey:
        return (self.name, "detail", record_id)

    def invalidates(self) -> list[CacheKey]:
        """Prefixes a write to this resource makes stale."""
        return [(self.name,)] + [(r,) for r in self.related if r != self.name]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list(
        self,
        client: SyncClient,
        *,
        filters: Filters | None = None,
        order: Order | None = None,
        limit: int | None = None,
        offset: int | None = None,
        options: QueryOptions | None = None,
    ) -> Any:
        """Read rows through the client cache."""
        order = order if order is not None else self.default_order
        key = self.key(
            filters=dict(filters) if filters else None,
            order=order,
            limit=limit,
            offset=offset,
        )

        async def fetch() -> list[Record]:
            return await self.store.select(
                self.name, filters=filters, order=order, limit=limit, offset=offset
            )

        return await client.read(key, fetch, self._options(options, many=True))

    async def get(
        self, client: SyncClient, record_id: Any, *, options: QueryOptions | None = None
    ) -> Any:
        """Read one row by id through the client cache. None when missing."""

        async def fetch() -> Record | None:
            rows = await self.store.select(
                self.name, filters={self.id_column: record_id}, limit=1
            )
            return rows[0] if rows else None

        return await client.read(
            self.detail_key(record_id), fetch, self._options(options, many=False)
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(self, client: SyncClient, values: Record | Sequence[Record]) -> list[Record]:
        """Create rows. Never retried automatically."""
        return await client.mutate(  # type: ignore[no-any-return]
            lambda: self.store.insert(self.name, values),
            self.invalidates(),
            idempotent=False,
        )

    async def update(
        self, client: SyncClient, record_id: Any, values: Mapping[str, Any]
    ) -> list[Record]:
        return await client.mutate(  # type: ignore[no-any-return]
            lambda: self.store.update(
                self.name, dict(values), filters={self.id_column: record_id}
            ),
            self.invalidates(),
            idempotent=True,
        )

    async def delete(self, client: SyncClient, record_id: Any) -> list[Record]:
        return await client.mutate(  # type: ignore[no-any-return]
            lambda: self.store.delete(self.name, filters={self.id_column: record_id}),
            self.invalidates(),
            idempotent=True,
        )

    def _options(self, options: QueryOptions | None, *, many: bool) -> QueryOptions | None:
        if self.model is None:
            return options
        schema = list[self.model] if many else self.model | None
        if options is None:
            return QueryOptions(schema=schema)
        if options.schema is not None:
            return options
        return replace(options, schema=schema)


#: name -> (default order, related prefixes invalidated by writes)
FLEET_RESOURCES: dict[str, tuple[Order | None, tuple[str, ...]]] = {
    "trips": (("date", False), ("vehicles", "drivers")),
    "vehicles": (("make", True), ()),
    "drivers": (("name", True), ()),
    "clients": (("name", True), ("client_contacts_count", "client_members_count")),
    "maintenance": (("date", False), ("spare_parts", "vehicles")),
    "fuel_logs": (("date", False), ("fuel_tanks", "tank_stats", "tank_dispensed", "vehicles")),
    "fuel_tanks": (None, ()),
    "spare_parts": (("name", True), ()),
    "invoices": (("invoice_date", False), ("clients",)),
    "quotations": (("created_at", False), ()),
    "contracts": (("created_at", False), ()),
    "payroll_employees": (("name", True), ("payroll_records",)),
    "payroll_records": (("pay_period_start", False), ()),
    "vehicle_inspections": (("inspection_date", False), ()),
    "vehicle_incident_reports": (("incident_date", False), ()),
    "vehicle_leases": (("lease_start_date", False), ()),
    "trip_assignments": (("assigned_at", False), ()),
    "trip_messages": (("timestamp", True), ()),
}


def build_resources(
    store: RecordStore,
    models: Mapping[str, type[Any]] | None = None,
) -> dict[str, Resource[Any]]:
    """Build the fleet resource catalog over one record store."""
    models = models or {}
    return {
        name: Resource(
            name,
            store,
            models.get(name),
            default_order=order,
            related=related,
        )
        for name, (order, related) in FLEET_RESOURCES.items()
    }


__all__ = ["FLEET_RESOURCES", "Resource", "build_resources"]
