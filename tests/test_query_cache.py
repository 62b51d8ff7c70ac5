# tests/test_query_cache.py
import asyncio

from query_cache import QueryCache, generate_key

TTL = 43200


def test_key_is_deterministic():
    a = {"dateRange": {"start": "2025-01-01", "end": "2025-01-31"}, "laboratories": ["A"]}
    b = {"laboratories": ["A"], "dateRange": {"end": "2025-01-31", "start": "2025-01-01"}}
    assert generate_key("kpi:sales", a) == generate_key("kpi:sales", b)


def test_key_changes_with_any_field():
    base = {"a": 1, "b": 2}
    assert generate_key("p", base) != generate_key("p", {"a": 1, "b": 3})
    assert generate_key("p", base) != generate_key("q", base)
    assert generate_key("p", base).startswith("p:")


def test_value_expires_after_ttl(clock):
    cache = QueryCache(ttl_seconds=TTL, clock=clock)
    cache.set("k", {"montant_ht": 10})

    clock.now += TTL - 0.001
    assert cache.get("k") == {"montant_ht": 10}

    clock.now += 0.002
    assert cache.get("k") is None
    assert len(cache) == 0


def test_missing_key_is_none(clock):
    assert QueryCache(clock=clock).get("nope") is None


def test_set_overwrites_and_resets_timestamp(clock):
    cache = QueryCache(ttl_seconds=10, clock=clock)
    cache.set("k", 1)
    clock.now += 8
    cache.set("k", 2)
    clock.now += 8
    assert cache.get("k") == 2


def test_with_cache_calls_producer_once(clock):
    cache = QueryCache(ttl_seconds=TTL, clock=clock)
    calls = []

    async def producer():
        calls.append(1)
        return {"quantite_vendue": 5}

    key = generate_key("kpi:sales", {"laboratories": ["A"]})
    first = asyncio.run(cache.with_cache(key, producer))
    clock.now += 1
    second = asyncio.run(cache.with_cache(key, producer))

    assert first == second == {"quantite_vendue": 5}
    assert len(calls) == 1


def test_with_cache_recomputes_after_expiry(clock):
    cache = QueryCache(ttl_seconds=5, clock=clock)
    calls = []

    async def producer():
        calls.append(1)
        return len(calls)

    asyncio.run(cache.with_cache("k", producer))
    clock.now += 6
    assert asyncio.run(cache.with_cache("k", producer)) == 2


def test_invalidate(clock):
    cache = QueryCache(clock=clock)
    cache.set("kpi:sales:{}", 1)
    cache.set("kpi:margin:{}", 2)
    cache.set("analysis:products:{}", 3)

    assert cache.invalidate("kpi:") == 2
    assert cache.get("analysis:products:{}") == 3
    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_injected_store_is_used(clock):
    store = {}
    cache = QueryCache(clock=clock, store=store)
    cache.set("k", 1)
    assert "k" in store
    assert store["k"].data == 1
    assert store["k"].timestamp == clock.now
