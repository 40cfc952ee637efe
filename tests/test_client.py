"""Tests for SyncClient."""

import asyncio

import pytest

from fleetsync import (
    AuthError,
    EntryState,
    MemoryAuthProvider,
    MemoryChangeFeed,
    MemoryRecordStore,
    QueryConfig,
    Session,
    SyncClient,
    SyncConfig,
)


class TestQueryDecorator:
    """client.query turns QueryConfig factories into cached reads."""

    async def test_cache_miss_then_hit(self, client: SyncClient) -> None:
        """Test that the decorated query fetches once and then hits cache."""
        fetch_count = 0

        @client.query
        def get_vehicle(vehicle_id: int) -> QueryConfig[dict]:
            async def fetch() -> dict:
                nonlocal fetch_count
                fetch_count += 1
                return {"id": vehicle_id}

            return QueryConfig(key=("vehicles", "detail", vehicle_id), fn=fetch)

        assert await get_vehicle(1) == {"id": 1}
        assert await get_vehicle(1) == {"id": 1}
        assert fetch_count == 1
        assert get_vehicle.__name__ == "get_vehicle"

    async def test_different_keys_are_separate(self, client: SyncClient) -> None:
        """Test that different arguments produce separate entries."""
        @client.query
        def get_vehicle(vehicle_id: int) -> QueryConfig[dict]:
            async def fetch() -> dict:
                return {"id": vehicle_id}

            return QueryConfig(key=("vehicles", "detail", vehicle_id), fn=fetch)

        assert await get_vehicle(1) == {"id": 1}
        assert await get_vehicle(2) == {"id": 2}
        assert len(client.cache) == 2


class TestEndToEnd:
    """Read, coalesce, mutate, refetch."""

    async def test_read_coalesce_mutate_refetch(
        self, client: SyncClient, clock, make_fetcher, drain
    ) -> None:
        """Test the full read, coalesce, mutate and refetch cycle."""
        key = ("maintenance",)
        fetch = make_fetcher([{"id": 1}], [{"id": 1}, {"id": 2}], gated=True)

        first = asyncio.create_task(client.read(key, fetch))
        await drain()
        clock.advance(10)
        second = asyncio.create_task(client.read(key, fetch))
        await drain()
        fetch.release()

        assert await first == await second == [{"id": 1}]
        assert fetch.calls == 1
        assert client.cache.state(key) is EntryState.FRESH

        states: list[EntryState] = []
        client.watch(key, fetch, lambda e: states.append(e.state_at(clock())))

        await client.mutate(lambda: _insert({"id": 2}), [key])

        assert EntryState.STALE in states
        assert fetch.calls == 2
        assert client.cache.get(key).data == [{"id": 1}, {"id": 2}]
        assert client.cache.state(key) is EntryState.FRESH

    async def test_memory_store_round_trip(self, clock, sleep, eventually) -> None:
        """Test that writes through the memory store refresh watched lists."""
        feed = MemoryChangeFeed()
        store = MemoryRecordStore(feed=feed)
        async with SyncClient(clock=clock, sleep=sleep, feed=feed) as client:
            assert await client.bridge.wait_connected(timeout=1)
            await client.subscribe_resource("drivers")

            async def fetch_drivers() -> list[dict]:
                return await store.select("drivers", order=("name", True))

            client.watch(("drivers",), fetch_drivers, lambda _: None)
            await eventually(lambda: client.cache.get(("drivers",)) is not None)

            # Written outside the client; only the change feed tells us
            await store.insert("drivers", {"name": "Zola"})

            await eventually(
                lambda: (client.cache.get(("drivers",)).data or []) == [{"id": 1, "name": "Zola"}]
            )


class TestLifecycle:
    """start/close and background work."""

    async def test_context_manager(self, clock, sleep, make_fetcher) -> None:
        """Test that the async context manager starts and clears the client."""
        async with SyncClient(clock=clock, sleep=sleep) as client:
            await client.read(("trips",), make_fetcher([]))
            assert len(client.cache) == 1
        assert len(client.cache) == 0

    async def test_start_binds_auth(self, clock, sleep, make_fetcher) -> None:
        """Test that start binds the auth provider."""
        auth = MemoryAuthProvider(Session(principal="alice"))
        async with SyncClient(clock=clock, sleep=sleep, auth=auth) as client:
            await client.read(("trips",), make_fetcher([]))
            await auth.sign_out()
            assert client.cache.get(("trips",)) is None

    async def test_start_is_idempotent(self, clock, sleep) -> None:
        """Test that calling start twice is harmless."""
        client = SyncClient(clock=clock, sleep=sleep)
        await client.start()
        await client.start()
        await client.close()

    async def test_gc_loop_sweeps_unobserved_entries(self, clock, sleep, make_fetcher) -> None:
        """Test that the periodic gc loop collects idle entries."""
        client = SyncClient(
            config=SyncConfig(gc_interval=10, gc_after="1s"), clock=clock, sleep=sleep
        )
        await client.start()
        await client.read(("trips",), make_fetcher([]))
        clock.advance(1_001)

        for _ in range(50):
            if client.cache.get(("trips",)) is None:
                break
            await asyncio.sleep(0.01)

        assert client.cache.get(("trips",)) is None
        await client.close()

    async def test_subscribe_resource_requires_feed(self, client: SyncClient) -> None:
        """Test that subscribe_resource without a change feed raises."""
        assert client.bridge is None
        with pytest.raises(RuntimeError, match="change feed"):
            await client.subscribe_resource("trips")

    async def test_auth_error_on_read_clears_caches(self, client, make_fetcher) -> None:
        """Test that an auth error on a read clears every cache."""
        await client.read(("vehicles",), make_fetcher([]))
        with pytest.raises(AuthError):
            await client.read(("user_profile",), make_fetcher(AuthError("expired")))
        assert client.cache.get(("vehicles",)) is None



class TestAuthFailureHook:
    """on_auth_failure runs after the caches are cleared."""

    async def test_hook_sees_empty_cache(self, clock, sleep, make_fetcher) -> None:
        """Test that the hook receives the error once every cache is cleared."""
        seen: list = []
        client = SyncClient(
            clock=clock,
            sleep=sleep,
            on_auth_failure=lambda error: seen.append((error, len(client.cache))),
        )
        await client.read(("vehicles",), make_fetcher([]))

        with pytest.raises(AuthError) as exc_info:
            await client.read(("user_profile",), make_fetcher(AuthError("expired")))

        assert seen == [(exc_info.value, 0)]
        await client.close()

    async def test_async_hook_runs_on_mutation_failure(
        self, clock, sleep, make_fetcher, eventually
    ) -> None:
        """Test that a coroutine hook is scheduled when a write is rejected."""
        redirects: list[str] = []

        async def redirect_to_login(error: AuthError) -> None:
            redirects.append(error.resource)

        client = SyncClient(clock=clock, sleep=sleep, on_auth_failure=redirect_to_login)
        with pytest.raises(AuthError):
            await client.mutate(make_fetcher(AuthError("forbidden")), [("invoices",)])

        await eventually(lambda: redirects == ["invoices"])
        await client.close()

    async def test_failing_async_hook_is_logged(
        self, clock, sleep, make_fetcher, eventually, caplog
    ) -> None:
        """Test that an exception from a coroutine hook is logged."""

        async def broken(error: AuthError) -> None:
            raise RuntimeError("no router")

        client = SyncClient(clock=clock, sleep=sleep, on_auth_failure=broken)
        with pytest.raises(AuthError):
            await client.read(("roles",), make_fetcher(AuthError("expired")))

        await eventually(lambda: "Auth failure hook raised" in caplog.text)
        await client.close()

async def _insert(record: dict) -> dict:
    return record
