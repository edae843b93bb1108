from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock
from mapestate_live.query_cache import (
    QueryClient,
    hash_query_key,
    normalize_filters,
    partial_match_key,
)

ALL = ("/api/properties",)
ERBIL = ("/api/properties", {"city": "Erbil"})
ONE = ("/api/properties", "42")
FEATURED = ("/api/properties/featured",)


class CountingQuery:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, key):
        self.calls += 1
        result = self.results.pop(0) if self.results else key
        if isinstance(result, Exception):
            raise result
        return result


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_partial_match_is_prefix_and_subset():
    assert partial_match_key(ERBIL, ALL)
    assert partial_match_key(ONE, ALL)
    assert partial_match_key(("/api/properties", {"city": "Erbil", "type": "villa"}), ERBIL)
    assert not partial_match_key(FEATURED, ALL)
    assert not partial_match_key(ALL, ERBIL)
    assert not partial_match_key(("/api/properties", {"city": "Duhok"}), ERBIL)


def test_normalize_filters_drops_empty_values_and_sorts():
    filters = normalize_filters({"type": "", "city": "Erbil", "features": [], "minPrice": None, "bedrooms": 0})
    assert filters == {"bedrooms": 0, "city": "Erbil"}
    assert list(filters) == ["bedrooms", "city"]
    assert normalize_filters(None) == {}


def test_key_hash_ignores_dict_order():
    assert hash_query_key(("/api/properties", {"a": 1, "b": 2})) == hash_query_key(
        ("/api/properties", {"b": 2, "a": 1})
    )


def test_fetch_returns_fresh_data_until_stale():
    clock = FakeClock()
    client = QueryClient(stale_time=60, clock=clock)
    query = CountingQuery("first", "second")

    async def run():
        a = await client.fetch_query(ALL, query)
        b = await client.fetch_query(ALL, query)
        clock.now += 61
        c = await client.fetch_query(ALL, query)
        return a, b, c

    assert asyncio.run(run()) == ("first", "first", "second")
    assert query.calls == 2


def test_concurrent_fetches_are_deduplicated():
    client = QueryClient()
    calls = 0

    async def run():
        gate = asyncio.Event()

        async def slow(key):
            nonlocal calls
            calls += 1
            await gate.wait()
            return "listing"

        waiters = [asyncio.create_task(client.fetch_query(ERBIL, slow)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        return await asyncio.gather(*waiters)

    assert asyncio.run(run()) == ["listing"] * 3
    assert calls == 1


def test_invalidate_marks_every_prefix_match_stale():
    client = QueryClient()
    for key in (ALL, ERBIL, ONE, FEATURED):
        client.set_query_data(key, "cached")

    assert client.invalidate_queries(ALL) == 3
    assert client.get_query_state(ERBIL).is_invalidated
    assert client.get_query_state(ONE).invalidation_count == 1
    assert not client.get_query_state(FEATURED).is_invalidated

    assert client.invalidate_queries(ERBIL, exact=True) == 1
    assert client.get_query_state(ERBIL).invalidation_count == 2


def test_invalidated_query_refetches_on_next_read():
    client = QueryClient()
    query = CountingQuery("old", "new")

    async def run():
        await client.fetch_query(ONE, query)
        client.invalidate_queries(ALL)
        return await client.fetch_query(ONE, query)

    assert asyncio.run(run()) == "new"
    assert not client.get_query_state(ONE).is_invalidated


def test_remove_queries_evicts_exact_key_only():
    client = QueryClient()
    client.set_query_data(ONE, {"id": "42"})
    client.set_query_data(("/api/properties", "420"), {"id": "420"})

    assert client.remove_queries(ONE, exact=True) == 1
    assert client.get_query_data(ONE) is None
    assert client.get_query_data(("/api/properties", "420")) == {"id": "420"}


def test_remove_during_fetch_raises_lookup_error():
    client = QueryClient()

    async def run():
        gate = asyncio.Event()

        async def slow(key):
            await gate.wait()
            return "late"

        waiter = asyncio.create_task(client.fetch_query(ONE, slow))
        await asyncio.sleep(0)
        client.remove_queries(ONE, exact=True)
        with pytest.raises(LookupError):
            await waiter

    asyncio.run(run())
    assert client.get_query_state(ONE) is None


def test_refetch_cancels_in_flight_fetch_and_last_one_wins():
    client = QueryClient()
    calls = 0

    async def run():
        started = asyncio.Event()
        never = asyncio.Event()

        async def query(key):
            nonlocal calls
            calls += 1
            if calls == 1:
                started.set()
                await never.wait()
                return "superseded"
            return "latest"

        waiter = asyncio.create_task(client.fetch_query(ALL, query))
        await started.wait()
        tasks = client.refetch_queries(ALL)
        await asyncio.gather(*tasks)
        return await waiter, len(tasks)

    result, refetched = asyncio.run(run())

    assert result == "latest"
    assert refetched == 1
    assert calls == 2
    assert client.get_query_data(ALL) == "latest"


def test_reader_gets_data_when_replacement_lands_first():
    client = QueryClient()
    query = CountingQuery("new")

    async def run():
        started = asyncio.Event()
        never = asyncio.Event()

        async def first_fetch(key):
            started.set()
            await never.wait()
            return "old"

        reader = asyncio.create_task(client.fetch_query(ALL, first_fetch))
        await started.wait()
        client.get_query_state(ALL).query_fn = query
        client.refetch_queries(ALL)
        # Let the replacement finish and clear its in-flight entry.
        for _ in range(5):
            await asyncio.sleep(0)
        assert client.get_health()["fetching"] == 0
        return await reader

    assert asyncio.run(run()) == "new"
    assert query.calls == 1
    assert client.get_query_data(ALL) == "new"


def test_refetch_skips_queries_without_query_fn():
    client = QueryClient()
    client.set_query_data(ERBIL, [])

    async def run():
        return client.refetch_queries(ALL)

    assert asyncio.run(run()) == []


def test_retry_uses_capped_exponential_delay():
    sleep = FakeSleep()
    client = QueryClient(retry=lambda count, error: count <= 6, sleep=sleep)
    query = CountingQuery(*[ConnectionError("down")] * 6, "ok")

    assert asyncio.run(client.fetch_query(ALL, query)) == "ok"
    assert sleep.delays == [1, 2, 4, 8, 16, 30.0]
    assert client.get_query_state(ALL).fetch_count == 7


def test_failure_without_retry_records_error():
    client = QueryClient()
    query = CountingQuery(ValueError("bad payload"))

    with pytest.raises(ValueError):
        asyncio.run(client.fetch_query(ALL, query))

    state = client.get_query_state(ALL)
    assert state.status == "error"
    assert state.error == "ValueError: bad payload"
    assert client.get_health()["errors"] == 1


def test_unused_queries_are_garbage_collected():
    clock = FakeClock()
    client = QueryClient(gc_time=600, clock=clock)
    client.set_query_data(ALL, [])
    clock.now += 601

    assert client.find_all() == []


def test_health_counts():
    client = QueryClient(stale_time=60, gc_time=120)
    client.set_query_data(ALL, [])
    client.set_query_data(ERBIL, [])
    client.invalidate_queries(ERBIL, exact=True)

    assert client.get_health() == {
        "queries": 2,
        "fetching": 0,
        "invalidated": 1,
        "errors": 0,
        "defaultStaleTimeSeconds": 60,
        "gcTimeSeconds": 120,
    }
