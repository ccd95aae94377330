"""Cache layer: epochs, single-flight, expiry and fail-open behavior."""

import asyncio

import pytest

from conftest import TENANT_A, TENANT_B, run
from rcmpay.services.cache.service import SCOPE_ANALYTICS, SCOPE_GATEWAYS, CacheKey, CacheLayer
from rcmpay.services.cache.store import MemoryCacheStore


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Counter:
    """Async compute function that counts how often it ran."""

    def __init__(self, value="v", delay: float = 0.0) -> None:
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return {"value": self.value, "call": self.calls}


class BrokenStore(MemoryCacheStore):
    def __init__(self, fail_bumps: bool = False, fail_reads: bool = False) -> None:
        super().__init__()
        self.fail_bumps = fail_bumps
        self.fail_reads = fail_reads

    def get(self, key):
        if self.fail_reads:
            raise ConnectionError("cache down")
        return super().get(key)

    def bump_epoch(self, tenant_id, scope):
        if self.fail_bumps:
            raise ConnectionError("cache down")
        return super().bump_epoch(tenant_id, scope)


def key(tenant_id: str = TENANT_A, scope: str = SCOPE_ANALYTICS, timeframe: str = "30d") -> CacheKey:
    return CacheKey(tenant_id=tenant_id, scope=scope, timeframe=timeframe, query="dashboard")


def test_second_lookup_is_served_from_cache():
    cache = CacheLayer(MemoryCacheStore())
    compute = Counter()

    first = run(cache.get_or_compute(key(), compute, 60))
    second = run(cache.get_or_compute(key(), compute, 60))

    assert first == second == {"value": "v", "call": 1}
    assert compute.calls == 1
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_invalidate_makes_existing_entries_stale():
    cache = CacheLayer(MemoryCacheStore())
    compute = Counter()
    run(cache.get_or_compute(key(), compute, 60))

    cache.invalidate(TENANT_A, SCOPE_ANALYTICS)
    again = run(cache.get_or_compute(key(), compute, 60))

    assert again["call"] == 2
    assert cache.stats()["stale"] == 1


def test_invalidation_is_scoped_to_tenant_and_scope():
    cache = CacheLayer(MemoryCacheStore())
    analytics_a, analytics_b, gateways_a = Counter(), Counter(), Counter()
    for k, compute in ((key(), analytics_a), (key(TENANT_B), analytics_b), (key(scope=SCOPE_GATEWAYS), gateways_a)):
        run(cache.get_or_compute(k, compute, 60))

    cache.invalidate(TENANT_A, SCOPE_ANALYTICS)
    for k, compute in ((key(), analytics_a), (key(TENANT_B), analytics_b), (key(scope=SCOPE_GATEWAYS), gateways_a)):
        run(cache.get_or_compute(k, compute, 60))

    assert analytics_a.calls == 2
    assert analytics_b.calls == 1
    assert gateways_a.calls == 1


def test_invalidate_without_scope_bumps_every_scope():
    store = MemoryCacheStore()
    cache = CacheLayer(store)

    cache.invalidate(TENANT_A)

    assert store.get_epoch(TENANT_A, SCOPE_ANALYTICS) == 1
    assert store.get_epoch(TENANT_A, SCOPE_GATEWAYS) == 1
    assert store.get_epoch(TENANT_B, SCOPE_ANALYTICS) == 0


def test_concurrent_misses_share_one_computation():
    cache = CacheLayer(MemoryCacheStore())
    compute = Counter(delay=0.01)

    async def burst():
        return await asyncio.gather(*(cache.get_or_compute(key(), compute, 60) for _ in range(5)))

    results = run(burst())

    assert compute.calls == 1
    assert all(result == results[0] for result in results)


def test_compute_failure_propagates_to_every_waiter_and_is_not_cached():
    cache = CacheLayer(MemoryCacheStore())
    calls = 0

    async def explode():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        raise RuntimeError("boom")

    async def burst():
        return await asyncio.gather(*(cache.get_or_compute(key(), explode, 60) for _ in range(3)), return_exceptions=True)

    results = run(burst())

    assert calls == 1
    assert all(isinstance(result, RuntimeError) for result in results)
    assert cache.store.size() == 0


def test_cancelled_leader_hands_computation_to_waiters():
    cache = CacheLayer(MemoryCacheStore())
    compute = Counter(delay=0.05)

    async def scenario():
        leader = asyncio.create_task(cache.get_or_compute(key(), compute, 60))
        await asyncio.sleep(0.01)
        follower = asyncio.create_task(cache.get_or_compute(key(), compute, 60))
        await asyncio.sleep(0.01)
        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        return await follower

    result = run(scenario())

    assert result == {"value": "v", "call": 2}
    assert compute.calls == 2
    assert run(cache.get_or_compute(key(), compute, 60)) == result


def test_expired_entries_recompute_and_are_swept():
    clock = FakeClock()
    cache = CacheLayer(MemoryCacheStore(), clock=clock)
    compute = Counter()
    run(cache.get_or_compute(key(), compute, 10))
    run(cache.get_or_compute(key(timeframe="7d"), compute, 100))

    clock.now += 11
    assert cache.sweep() == 1
    assert cache.store.size() == 1

    run(cache.get_or_compute(key(), compute, 10))
    assert compute.calls == 3


def test_unreadable_backend_fails_open():
    cache = CacheLayer(BrokenStore(fail_reads=True))
    compute = Counter()

    assert run(cache.get_or_compute(key(), compute, 60))["call"] == 1
    assert run(cache.get_or_compute(key(), compute, 60))["call"] == 2
    assert cache.stats()["failures"] == 2


def test_failed_invalidation_bypasses_cache_until_bump_succeeds():
    store = BrokenStore()
    cache = CacheLayer(store)
    compute = Counter()
    run(cache.get_or_compute(key(), compute, 60))

    store.fail_bumps = True
    cache.invalidate(TENANT_A, SCOPE_ANALYTICS)
    # The old entry must not be served while the epoch bump is outstanding.
    assert run(cache.get_or_compute(key(), compute, 60))["call"] == 2

    store.fail_bumps = False
    assert run(cache.get_or_compute(key(), compute, 60))["call"] == 3
    assert run(cache.get_or_compute(key(), compute, 60))["call"] == 3


def test_stats_report_backend_and_hit_rate():
    cache = CacheLayer(MemoryCacheStore())
    compute = Counter()
    for _ in range(4):
        run(cache.get_or_compute(key(), compute, 60))

    stats = cache.stats()
    assert stats["backend"] == "memory"
    assert stats["size"] == 1
    assert stats["hit_rate"] == pytest.approx(0.75)
    assert stats["inflight"] == 0
