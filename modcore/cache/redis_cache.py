"""Redis-backed L2 cache tier."""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from modcore.cache.base import Cache, CacheConfig, CacheStats
from modcore.core.exceptions import (
    CacheClosedError,
    CacheConnectionError,
    CacheError,
    KeyNotFoundError,
)

logger = logging.getLogger("modcore.cache")


@dataclass
class RedisCacheConfig(CacheConfig):
    """Connection settings, passed to redis-py unchanged.

    redis-py uses one socket timeout for reads and writes, so the larger of
    ``read_timeout`` and ``write_timeout`` is applied.
    """
    url: str = "redis://localhost:6379/0"
    pool_size: int = 10
    max_retries: int = 3
    dial_timeout: float = 5.0
    read_timeout: float = 3.0
    write_timeout: float = 3.0
    health_check_interval: int = 30


class RedisCache(Cache):
    """Redis-backed caching tier.

    Values are stored as JSON. TTLs use millisecond commands so sub-second
    lifetimes survive the round trip.
    """

    def __init__(self, config: Optional[RedisCacheConfig] = None, client: Optional[redis.Redis] = None):
        self.config = config or RedisCacheConfig()
        self._pool: Optional[redis.ConnectionPool] = None
        self._client = client
        self._stats = CacheStats()
        self._stats_lock = threading.Lock()
        self._closed = False

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            cfg = self.config
            self._pool = redis.ConnectionPool.from_url(
                cfg.url,
                decode_responses=True,
                max_connections=cfg.pool_size,
                socket_connect_timeout=cfg.dial_timeout,
                socket_timeout=max(cfg.read_timeout, cfg.write_timeout),
                health_check_interval=cfg.health_check_interval,
                retry=Retry(ExponentialBackoff(), cfg.max_retries),
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            )
            self._client = redis.Redis(connection_pool=self._pool)
        return self._client

    # ---- helpers ----

    def _count(self, field: str) -> None:
        with self._stats_lock:
            setattr(self._stats, field, getattr(self._stats, field) + 1)

    @contextmanager
    def _call(self, op: str, key: Optional[str] = None):
        if self._closed:
            raise CacheClosedError(op=op)
        try:
            yield
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            self._count("errors")
            raise CacheConnectionError(str(exc), op=op, key=key) from exc
        except redis.RedisError as exc:
            self._count("errors")
            raise CacheError(str(exc), op=op, key=key) from exc

    def _px(self, ttl: float) -> Optional[int]:
        if ttl == 0:
            ttl = self.config.default_ttl
        if ttl <= 0:
            return None
        return max(1, int(ttl * 1000))

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, default=str)

    @staticmethod
    def _decode(raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError:
            # Written by something other than this class
            return raw

    # ---- Cache contract ----

    def get(self, key: str) -> Any:
        with self._call("get", key):
            raw = self.client.get(key)
        if raw is None:
            self._count("misses")
            raise KeyNotFoundError(key)
        self._count("hits")
        return self._decode(raw)

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        data = self._encode(value)
        with self._call("set", key):
            self.client.set(key, data, px=self._px(ttl))

    def delete(self, key: str) -> None:
        with self._call("delete", key):
            self.client.delete(key)

    def exists(self, key: str) -> bool:
        with self._call("exists", key):
            return self.client.exists(key) > 0

    def clear(self) -> None:
        with self._call("clear"):
            self.client.flushdb()

    def keys(self, pattern: str = "*") -> List[str]:
        with self._call("keys"):
            # SCAN may yield a key more than once
            return sorted(set(self.client.scan_iter(match=pattern, count=500)))

    def ttl(self, key: str) -> Optional[float]:
        with self._call("ttl", key):
            remaining = self.client.pttl(key)
        if remaining == -2:
            raise KeyNotFoundError(key, op="ttl")
        if remaining == -1:
            return None
        return remaining / 1000.0

    def expire(self, key: str, ttl: float) -> None:
        px = self._px(ttl)
        with self._call("expire", key):
            if px is None:
                if not self.client.exists(key):
                    raise KeyNotFoundError(key, op="expire")
                self.client.persist(key)
                return
            updated = self.client.pexpire(key, px)
        if not updated:
            raise KeyNotFoundError(key, op="expire")

    def increment(self, key: str, delta: int = 1) -> int:
        with self._call("increment", key):
            return int(self.client.incrby(key, delta))

    def decrement(self, key: str, delta: int = 1) -> int:
        with self._call("decrement", key):
            return int(self.client.decrby(key, delta))

    def get_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        with self._call("get_multi"):
            values = self.client.mget(keys)
        result: Dict[str, Any] = {}
        for key, raw in zip(keys, values):
            if raw is None:
                self._count("misses")
                continue
            self._count("hits")
            result[key] = self._decode(raw)
        return result

    def set_multi(self, items: Dict[str, Any], ttl: float = 0) -> None:
        if not items:
            return
        px = self._px(ttl)
        encoded = {key: self._encode(value) for key, value in items.items()}
        with self._call("set_multi"):
            pipe = self.client.pipeline(transaction=True)
            for key, data in encoded.items():
                pipe.set(key, data, px=px)
            pipe.execute()

    def delete_multi(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        with self._call("delete_multi"):
            self.client.delete(*keys)

    def stats(self) -> CacheStats:
        with self._call("stats"):
            size = int(self.client.dbsize())
        with self._stats_lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                keys=size,
                errors=self._stats.errors,
            )

    def ping(self) -> bool:
        """Check if Redis is reachable."""
        if self._closed:
            return False
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._client is not None:
            self._client.close()
        if self._pool is not None:
            self._pool.disconnect()
        logger.debug("Redis cache closed")
