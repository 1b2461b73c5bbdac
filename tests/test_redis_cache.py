"""L2 Redis tier, exercised against a mocked redis client."""

import json
from unittest.mock import MagicMock

import pytest
import redis

from modcore.cache.redis_cache import RedisCache, RedisCacheConfig
from modcore.core.exceptions import (
    CacheClosedError,
    CacheConnectionError,
    CacheError,
    KeyNotFoundError,
)


@pytest.fixture
def client():
    return MagicMock(spec=redis.Redis)


@pytest.fixture
def cache(client):
    return RedisCache(RedisCacheConfig(default_ttl=300), client=client)


def test_set_encodes_json_with_millisecond_ttl(cache, client):
    cache.set("user:1", {"id": 1}, 1.5)
    client.set.assert_called_once_with("user:1", json.dumps({"id": 1}), px=1500)


def test_set_zero_ttl_uses_default(cache, client):
    cache.set("k", "v")
    client.set.assert_called_once_with("k", '"v"', px=300_000)


def test_set_negative_ttl_has_no_expiry(cache, client):
    cache.set("k", 1, -1)
    client.set.assert_called_once_with("k", "1", px=None)


def test_get_decodes_json(cache, client):
    client.get.return_value = '{"id": 1}'
    assert cache.get("user:1") == {"id": 1}


def test_get_returns_raw_string_when_not_json(cache, client):
    client.get.return_value = "plain text"
    assert cache.get("k") == "plain text"


def test_get_missing(cache, client):
    client.get.return_value = None
    with pytest.raises(KeyNotFoundError):
        cache.get("k")
    assert cache._stats.misses == 1


def test_ttl_mapping(cache, client):
    client.pttl.return_value = 2500
    assert cache.ttl("k") == pytest.approx(2.5)

    client.pttl.return_value = -1
    assert cache.ttl("k") is None

    client.pttl.return_value = -2
    with pytest.raises(KeyNotFoundError):
        cache.ttl("k")


def test_expire_uses_pexpire(cache, client):
    client.pexpire.return_value = True
    cache.expire("k", 2)
    client.pexpire.assert_called_once_with("k", 2000)


def test_expire_missing_key(cache, client):
    client.pexpire.return_value = False
    with pytest.raises(KeyNotFoundError):
        cache.expire("k", 2)


def test_expire_negative_persists(cache, client):
    client.exists.return_value = 1
    cache.expire("k", -1)
    client.persist.assert_called_once_with("k")


def test_increment_and_decrement(cache, client):
    client.incrby.return_value = 5
    client.decrby.return_value = 3
    assert cache.increment("n", 5) == 5
    assert cache.decrement("n", 2) == 3
    client.incrby.assert_called_once_with("n", 5)
    client.decrby.assert_called_once_with("n", 2)


def test_keys_uses_scan(cache, client):
    client.scan_iter.return_value = iter(["b", "a", "b"])
    assert cache.keys("*") == ["a", "b"]
    client.scan_iter.assert_called_once_with(match="*", count=500)
    client.keys.assert_not_called()


def test_get_multi_skips_missing(cache, client):
    client.mget.return_value = ["1", None, '"x"']
    assert cache.get_multi(["a", "b", "c"]) == {"a": 1, "c": "x"}


def test_set_multi_uses_transactional_pipeline(cache, client):
    pipe = MagicMock()
    client.pipeline.return_value = pipe

    cache.set_multi({"a": 1, "b": 2}, 10)

    client.pipeline.assert_called_once_with(transaction=True)
    assert pipe.set.call_count == 2
    pipe.set.assert_any_call("a", "1", px=10_000)
    pipe.execute.assert_called_once()


def test_clear_flushes_db(cache, client):
    cache.clear()
    client.flushdb.assert_called_once()


def test_connection_errors_are_translated(cache, client):
    client.get.side_effect = redis.ConnectionError("refused")
    with pytest.raises(CacheConnectionError) as exc_info:
        cache.get("k")
    assert isinstance(exc_info.value.__cause__, redis.ConnectionError)
    assert exc_info.value.op == "get"


def test_timeouts_are_connection_errors(cache, client):
    client.set.side_effect = redis.TimeoutError("slow")
    with pytest.raises(CacheConnectionError):
        cache.set("k", "v")


def test_other_redis_errors_are_cache_errors(cache, client):
    client.incrby.side_effect = redis.ResponseError("value is not an integer")
    with pytest.raises(CacheError) as exc_info:
        cache.increment("k")
    assert not isinstance(exc_info.value, CacheConnectionError)


def test_ping(cache, client):
    client.ping.return_value = True
    assert cache.ping()

    client.ping.side_effect = redis.ConnectionError("down")
    assert not cache.ping()


def test_close_is_idempotent(cache, client):
    cache.close()
    cache.close()
    client.close.assert_called_once()

    with pytest.raises(CacheClosedError):
        cache.get("k")
    assert not cache.ping()
