"""Tests for Resource bindings and the fleet catalog."""

import pytest
from pydantic import BaseModel

from fleetsync import (
    FLEET_RESOURCES,
    EntryState,
    MemoryRecordStore,
    NetworkError,
    PayloadError,
    Resource,
    build_resources,
)


class SparePart(BaseModel):
    id: int
    name: str
    quantity: int = 0


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


class TestKeys:
    """Canonical keys."""

    def test_plain_key(self, store) -> None:
        """Test that a key without parameters is the resource name."""
        assert Resource("vehicles", store).key() == ("vehicles",)

    def test_parameterized_key(self, store) -> None:
        """Test that parameters other than None are part of the key."""
        key = Resource("spare_parts", store).key(order=("name", True), limit=None)
        assert key == ("spare_parts", {"order": ("name", True)})

    def test_detail_key(self, store) -> None:
        """Test the detail key layout."""
        assert Resource("trips", store).detail_key(4) == ("trips", "detail", 4)

    def test_invalidates_related(self, store) -> None:
        """Test that invalidates includes related prefixes."""
        resource = Resource("maintenance", store, related=("spare_parts", "vehicles"))
        assert resource.invalidates() == [("maintenance",), ("spare_parts",), ("vehicles",)]

    def test_empty_name_rejected(self, store) -> None:
        """Test that an empty resource name is rejected."""
        with pytest.raises(ValueError):
            Resource("", store)


class TestReads:
    """list and get through the client cache."""

    async def test_list_uses_default_order(self, client, store) -> None:
        """Test that list applies the default order."""
        await store.insert("maintenance", [{"date": "2026-01-01"}, {"date": "2026-03-01"}])
        maintenance = Resource("maintenance", store, default_order=("date", False))

        rows = await maintenance.list(client)

        assert [r["date"] for r in rows] == ["2026-03-01", "2026-01-01"]
        assert client.cache.keys(("maintenance",)) == [
            ("maintenance", (("order", ("date", False)),))
        ]

    async def test_list_is_cached(self, client, store) -> None:
        """Test that a repeated list is served from cache."""
        vehicles = Resource("vehicles", store)
        await store.insert("vehicles", {"make": "Volvo"})
        await vehicles.list(client)
        await store.insert("vehicles", {"make": "Scania"})

        assert len(await vehicles.list(client)) == 1

    async def test_filters_are_part_of_the_key(self, client, store) -> None:
        """Test that different filters produce different entries."""
        trips = Resource("trips", store)
        await store.insert("trips", [{"status": "open"}, {"status": "done"}])

        open_trips = await trips.list(client, filters={"status": "open"})
        all_trips = await trips.list(client)

        assert len(open_trips) == 1
        assert len(all_trips) == 2

    async def test_get_by_id(self, client, store) -> None:
        """Test that get returns one row or None."""
        drivers = Resource("drivers", store)
        await store.insert("drivers", {"name": "Ada"})

        assert await drivers.get(client, 1) == {"id": 1, "name": "Ada"}
        assert await drivers.get(client, 99) is None

    async def test_model_validation(self, client, store) -> None:
        """Test that rows are parsed into the resource model."""
        parts = Resource("spare_parts", store, SparePart)
        await store.insert("spare_parts", {"name": "filter", "quantity": 3})

        rows = await parts.list(client)
        part = await parts.get(client, 1)

        assert rows == [SparePart(id=1, name="filter", quantity=3)]
        assert part == SparePart(id=1, name="filter", quantity=3)

    async def test_model_mismatch_raises(self, client, store) -> None:
        """Test that rows not matching the model raise PayloadError."""
        parts = Resource("spare_parts", store, SparePart)
        await store.insert("spare_parts", {"quantity": 3})
        with pytest.raises(PayloadError):
            await parts.list(client)


class TestWrites:
    """insert/update/delete invalidate the resource and related prefixes."""

    async def test_insert_invalidates_related(self, client, store) -> None:
        """Test that insert invalidates the resource and its related prefixes."""
        maintenance = Resource("maintenance", store, related=("spare_parts", "vehicles"))
        spare_parts = Resource("spare_parts", store)
        trips = Resource("trips", store)
        await maintenance.list(client)
        await spare_parts.list(client)
        await trips.list(client)

        rows = await maintenance.insert(client, {"date": "2026-02-01"})

        assert rows[0]["id"] == 1
        assert client.cache.state(maintenance.key()) is EntryState.STALE
        assert client.cache.state(spare_parts.key()) is EntryState.STALE
        assert client.cache.state(trips.key()) is EntryState.FRESH

    async def test_update_and_delete(self, client, store) -> None:
        """Test that update and delete are visible on the next read."""
        vehicles = Resource("vehicles", store)
        await vehicles.insert(client, {"make": "Volvo"})

        await vehicles.update(client, 1, {"make": "Scania"})
        assert (await vehicles.get(client, 1))["make"] == "Scania"

        await vehicles.delete(client, 1)
        assert await vehicles.get(client, 1) is None

    async def test_insert_not_retried(self, client) -> None:
        """Test that insert is never retried."""
        class FlakyStore(MemoryRecordStore):
            attempts = 0

            async def insert(self, resource, values):
                self.attempts += 1
                raise NetworkError("reset", resource=resource)

        store = FlakyStore()
        with pytest.raises(NetworkError):
            await Resource("invoices", store).insert(client, {"total": 10})
        assert store.attempts == 1

    async def test_update_retried_once(self, client) -> None:
        """Test that update is retried once on a network error."""
        class FlakyStore(MemoryRecordStore):
            attempts = 0

            async def update(self, resource, values, *, filters):
                self.attempts += 1
                if self.attempts == 1:
                    raise NetworkError("reset", resource=resource)
                return [dict(values, **filters)]

        store = FlakyStore()
        rows = await Resource("invoices", store).update(client, 5, {"paid": True})
        assert rows == [{"paid": True, "id": 5}]
        assert store.attempts == 2


class TestCatalog:
    """The fleet resource catalog."""

    def test_related_fan_out(self) -> None:
        """Test the related fan-out of the fleet catalog."""
        assert FLEET_RESOURCES["trips"][1] == ("vehicles", "drivers")
        assert FLEET_RESOURCES["maintenance"][1] == ("spare_parts", "vehicles")
        assert FLEET_RESOURCES["fuel_logs"][1] == (
            "fuel_tanks",
            "tank_stats",
            "tank_dispensed",
            "vehicles",
        )
        assert FLEET_RESOURCES["invoices"][1] == ("clients",)
        assert FLEET_RESOURCES["clients"][1] == (
            "client_contacts_count",
            "client_members_count",
        )
        assert FLEET_RESOURCES["payroll_employees"][1] == ("payroll_records",)
        assert FLEET_RESOURCES["spare_parts"][1] == ()

    def test_build_resources(self, store) -> None:
        """Test that build_resources covers the whole catalog."""
        resources = build_resources(store, models={"spare_parts": SparePart})
        assert set(resources) == set(FLEET_RESOURCES)
        assert resources["maintenance"].default_order == ("date", False)
        assert resources["spare_parts"].model is SparePart
        assert resources["vehicles"].model is None
        assert all(r.store is store for r in resources.values())
