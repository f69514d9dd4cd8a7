"""
Result Cache Tests

Test Coverage:
--------------
1. At most one compute per key within the TTL
2. Recompute after expiry (lazy eviction)
3. Failures are not cached and propagate
4. Per-key TTL overrides
5. Invalidation and stats
6. Concurrent access without single-flight
7. Single-flight coalescing (value and exception)
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from runlens.cache import CachedEntry, ResultCache


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def cache(fake_clock):
    return ResultCache(default_ttl_seconds=30, clock=fake_clock)


class Counter:
    def __init__(self, value="v"):
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return f"{self.value}{self.calls}"


class TestCachedEntry:

    def test_valid_strictly_before_ttl(self):
        entry = CachedEntry(key="k", value=1, created_at=100.0, ttl_seconds=30)
        assert entry.is_valid(129.9)
        assert not entry.is_valid(130.0)
        assert entry.age(110.0) == 10.0


class TestGetOrCompute:

    def test_computes_once_within_ttl(self, cache, fake_clock):
        compute = Counter()
        assert cache.get_or_compute("metrics:ALL", compute) == "v1"
        fake_clock.advance(29)
        assert cache.get_or_compute("metrics:ALL", compute) == "v1"
        assert compute.calls == 1

    def test_recomputes_after_expiry(self, cache, fake_clock):
        compute = Counter()
        cache.get_or_compute("metrics:ALL", compute)
        fake_clock.advance(30)
        assert cache.get_or_compute("metrics:ALL", compute) == "v2"
        assert compute.calls == 2

    def test_keys_are_independent(self, cache):
        all_units = Counter("all")
        chartnav = Counter("cn")
        assert cache.get_or_compute("metrics:ALL", all_units) == "all1"
        assert cache.get_or_compute("metrics:ChartNav", chartnav) == "cn1"
        assert cache.keys() == ["metrics:ALL", "metrics:ChartNav"]

    def test_failure_is_not_cached(self, cache):
        def boom():
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError, match="store down"):
            cache.get_or_compute("metrics:ALL", boom)

        assert cache.lookup("metrics:ALL") is None
        compute = Counter()
        assert cache.get_or_compute("metrics:ALL", compute) == "v1"

    def test_failure_after_expiry_leaves_no_entry(self, cache, fake_clock):
        cache.get_or_compute("k", Counter())
        fake_clock.advance(31)

        def boom():
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            cache.get_or_compute("k", boom)
        assert cache.lookup("k") is None

    def test_per_key_ttl(self, cache, fake_clock):
        fast = Counter()
        cache.get_or_compute("current_executions:ALL", fast, ttl_seconds=5)
        fake_clock.advance(6)
        cache.get_or_compute("current_executions:ALL", fast, ttl_seconds=5)
        assert fast.calls == 2

    def test_rejects_non_positive_ttl(self, cache):
        with pytest.raises(ValueError):
            cache.get_or_compute("k", Counter(), ttl_seconds=0)
        with pytest.raises(ValueError):
            ResultCache(default_ttl_seconds=0)


class TestMaintenance:

    def test_expired_entries_evicted_on_lookup(self, cache, fake_clock):
        cache.put("k", 1)
        assert cache.stats().size == 1
        fake_clock.advance(31)
        assert cache.lookup("k") is None
        assert cache.stats().size == 0

    def test_invalidate(self, cache):
        cache.put("a", 1)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False

    def test_invalidate_prefix(self, cache):
        cache.put("default/metrics:ALL", 1)
        cache.put("default/trends:ALL", 2)
        cache.put("other/metrics:ALL", 3)
        assert cache.invalidate_prefix("default/") == 2
        assert cache.keys() == ["other/metrics:ALL"]

    def test_stats(self, cache):
        compute = Counter()
        cache.get_or_compute("k", compute)
        cache.get_or_compute("k", compute)
        cache.get_or_compute("k", compute)
        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.size) == (2, 1, 1)
        assert stats.to_dict()["hit_rate"] == pytest.approx(0.6667, abs=1e-4)

    def test_clear(self, cache):
        cache.put("a", 1)
        cache.clear()
        assert cache.keys() == []


@pytest.mark.slow
class TestConcurrency:

    def test_concurrent_readers_see_complete_values(self):
        cache = ResultCache(default_ttl_seconds=60)

        def compute():
            return {"total": 10, "failed": 3}

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(
                lambda _: cache.get_or_compute("metrics:ALL", compute), range(200)
            ))

        assert all(r == {"total": 10, "failed": 3} for r in results)

    def test_without_single_flight_concurrent_misses_each_compute(self):
        cache = ResultCache(default_ttl_seconds=60)
        barrier = threading.Barrier(4)
        calls = []
        lock = threading.Lock()

        def compute():
            with lock:
                calls.append(1)
            barrier.wait(timeout=5)
            return len(calls)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: cache.get_or_compute("k", compute), range(4)))

        assert len(calls) == 4
        assert cache.lookup("k") is not None

    def test_single_flight_coalesces(self):
        cache = ResultCache(default_ttl_seconds=60, single_flight=True)
        release = threading.Event()
        calls = []

        def compute():
            calls.append(1)
            release.wait(timeout=5)
            return "shared"

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(cache.get_or_compute, "k", compute) for _ in range(8)]
            time.sleep(0.1)
            release.set()
            results = [f.result(timeout=5) for f in futures]

        assert results == ["shared"] * 8
        assert len(calls) == 1

    def test_single_flight_shares_exception_and_caches_nothing(self):
        cache = ResultCache(default_ttl_seconds=60, single_flight=True)
        release = threading.Event()

        def compute():
            release.wait(timeout=5)
            raise RuntimeError("timeout")

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(cache.get_or_compute, "k", compute) for _ in range(4)]
            time.sleep(0.1)
            release.set()
            for f in futures:
                with pytest.raises(RuntimeError, match="timeout"):
                    f.result(timeout=5)

        assert cache.lookup("k") is None
