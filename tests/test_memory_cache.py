"""L1 memory tier: TTLs, LRU order, counters and lifecycle."""

import threading
import time

import pytest

from modcore.cache.memory import MemoryCache, MemoryCacheConfig
from modcore.core.exceptions import CacheClosedError, CacheError, KeyNotFoundError


@pytest.fixture
def clocked(clock):
    cache = MemoryCache(MemoryCacheConfig(default_ttl=10, cleanup_interval=0), clock=clock)
    yield cache
    cache.close()


def test_set_then_get(memory_cache):
    memory_cache.set("user:1", {"name": "ada"}, 30)
    assert memory_cache.get("user:1") == {"name": "ada"}


def test_missing_key(memory_cache):
    with pytest.raises(KeyNotFoundError):
        memory_cache.get("nope")


def test_short_ttl_expires_in_real_time(memory_cache):
    memory_cache.set("k", "v", 0.001)
    time.sleep(0.005)
    with pytest.raises(KeyNotFoundError):
        memory_cache.get("k")


def test_zero_ttl_uses_default(clocked, clock):
    clocked.set("k", "v")
    assert clocked.ttl("k") == pytest.approx(10)
    clock.advance(10)
    assert not clocked.exists("k")


def test_negative_ttl_never_expires(clocked, clock):
    clocked.set("k", "v", -1)
    clock.advance(10_000)
    assert clocked.get("k") == "v"
    assert clocked.ttl("k") is None


def test_expire_updates_and_persists(clocked, clock):
    clocked.set("k", "v", 5)
    clocked.expire("k", 100)
    clock.advance(50)
    assert clocked.ttl("k") == pytest.approx(50)

    clocked.expire("k", -1)
    assert clocked.ttl("k") is None

    with pytest.raises(KeyNotFoundError):
        clocked.expire("missing", 5)


def test_ttl_of_missing_key(clocked):
    with pytest.raises(KeyNotFoundError):
        clocked.ttl("missing")


def test_lru_evicts_least_recently_accessed():
    cache = MemoryCache(MemoryCacheConfig(max_size=2, cleanup_interval=0))
    try:
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.exists("a")
        assert not cache.exists("b")
        assert cache.exists("c")
        assert cache.stats().evictions == 1
    finally:
        cache.close()


def test_overwrite_does_not_evict():
    cache = MemoryCache(MemoryCacheConfig(max_size=2, cleanup_interval=0))
    try:
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert sorted(cache.keys()) == ["a", "b"]
        assert cache.get("a") == 10
        assert cache.stats().evictions == 0
    finally:
        cache.close()


def test_expired_entry_is_purged_instead_of_evicting(clock):
    cache = MemoryCache(MemoryCacheConfig(max_size=2, cleanup_interval=0), clock=clock)
    try:
        cache.set("short", 1, 5)
        cache.set("live", 2, 60)
        clock.advance(10)

        cache.set("new", 3, 60)

        assert cache.get("live") == 2
        assert cache.get("new") == 3
        assert cache.stats().evictions == 0
    finally:
        cache.close()


def test_keys_glob_and_expiry(clocked, clock):
    clocked.set("user:1", 1, 5)
    clocked.set("user:2", 2, 50)
    clocked.set("order:1", 3, 50)
    clock.advance(10)

    assert clocked.keys("user:*") == ["user:2"]
    assert sorted(clocked.keys()) == ["order:1", "user:2"]
    assert clocked.keys("user:?") == ["user:2"]


def test_increment_and_decrement(memory_cache):
    assert memory_cache.increment("hits") == 1
    assert memory_cache.increment("hits", 5) == 6
    assert memory_cache.decrement("hits", 2) == 4
    assert memory_cache.ttl("hits") is None


def test_increment_non_integer(memory_cache):
    memory_cache.set("name", "ada")
    with pytest.raises(CacheError):
        memory_cache.increment("name")


def test_concurrent_increment_is_atomic(memory_cache):
    threads_count, per_thread = 16, 250
    barrier = threading.Barrier(threads_count)

    def worker():
        barrier.wait()
        for _ in range(per_thread):
            memory_cache.increment("counter")

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert memory_cache.get("counter") == threads_count * per_thread


def test_multi_operations(memory_cache):
    memory_cache.set_multi({"a": 1, "b": 2, "c": 3}, 30)
    assert memory_cache.get_multi(["a", "c", "zzz"]) == {"a": 1, "c": 3}

    memory_cache.delete_multi(["a", "b", "zzz"])
    assert memory_cache.keys() == ["c"]


def test_delete_and_clear(memory_cache):
    memory_cache.set("a", 1)
    memory_cache.delete("a")
    memory_cache.delete("a")
    assert not memory_cache.exists("a")

    memory_cache.set("b", 2)
    memory_cache.clear()
    assert memory_cache.keys() == []


def test_cleanup_expired_sweeps_synchronously(clocked, clock):
    clocked.set("a", 1, 1)
    clocked.set("b", 2, 1)
    clocked.set("c", 3, 100)
    clock.advance(5)

    assert clocked.cleanup_expired() == 2
    assert clocked.stats().keys == 1


def test_background_cleanup_thread_runs():
    cache = MemoryCache(MemoryCacheConfig(cleanup_interval=0.01))
    try:
        cache.set("k", "v", 0.001)
        deadline = time.monotonic() + 2
        while cache.stats().keys and time.monotonic() < deadline:
            time.sleep(0.01)
        assert cache.stats().keys == 0
    finally:
        cache.close()


def test_stats_count_hits_and_misses(memory_cache):
    memory_cache.set("a", 1)
    memory_cache.get("a")
    with pytest.raises(KeyNotFoundError):
        memory_cache.get("b")

    stats = memory_cache.stats()
    assert (stats.hits, stats.misses, stats.keys) == (1, 1, 1)


def test_closed_cache_rejects_operations():
    cache = MemoryCache(MemoryCacheConfig(cleanup_interval=0.05))
    cache.close()
    cache.close()

    assert not cache.ping()
    with pytest.raises(CacheClosedError):
        cache.get("k")
    with pytest.raises(CacheClosedError):
        cache.set("k", "v")


def test_context_manager_closes():
    with MemoryCache(MemoryCacheConfig(cleanup_interval=0)) as cache:
        cache.set("k", "v")
    with pytest.raises(CacheClosedError):
        cache.get("k")
