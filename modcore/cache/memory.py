"""In-process L1 cache with LRU eviction, TTLs and a background cleanup sweep."""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from modcore.cache.base import Cache, CacheConfig, CacheStats, match_pattern
from modcore.core.exceptions import CacheClosedError, CacheError, KeyNotFoundError

logger = logging.getLogger("modcore.cache")


@dataclass
class MemoryCacheConfig(CacheConfig):
    """Memory tier settings.

    ``max_size <= 0`` disables the size bound. ``cleanup_interval <= 0``
    disables the background sweep (``cleanup_expired()`` still works).
    """
    max_size: int = 10000
    cleanup_interval: float = 60.0


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: Optional[float]):
        self.value = value
        self.expires_at = expires_at


class MemoryCache(Cache):
    """Thread-safe LRU cache.

    Entries live in an OrderedDict whose end is the most recently accessed
    key, so eviction pops from the front in O(1). Reads and writes both count
    as access. One lock guards the map, its order and the stats.
    """

    def __init__(
        self,
        config: Optional[MemoryCacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or MemoryCacheConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._items: "OrderedDict[str, _Entry]" = OrderedDict()
        # Never later than the earliest expires_at in _items
        self._next_expiry: Optional[float] = None
        self._stats = CacheStats()
        self._closed = False
        self._stop = threading.Event()
        self._cleaner: Optional[threading.Thread] = None

        if self.config.cleanup_interval > 0:
            self._cleaner = threading.Thread(
                target=self._cleanup_loop,
                name="modcore-cache-cleanup",
                daemon=True,
            )
            self._cleaner.start()

    # ---- internals (caller holds the lock) ----

    def _check_open(self, op: str) -> None:
        if self._closed:
            raise CacheClosedError(op=op)

    def _expiry(self, ttl: float) -> Optional[float]:
        if ttl == 0:
            ttl = self.config.default_ttl
        if ttl <= 0:
            return None
        return self._clock() + ttl

    def _is_expired(self, entry: _Entry, now: float) -> bool:
        return entry.expires_at is not None and now >= entry.expires_at

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._items.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._items[key]
            return None
        return entry

    def _note_expiry(self, expires_at: Optional[float]) -> None:
        if expires_at is not None and (self._next_expiry is None or expires_at < self._next_expiry):
            self._next_expiry = expires_at

    def _purge_expired_locked(self, now: float) -> int:
        expired = [key for key, entry in self._items.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._items[key]
        deadlines = [entry.expires_at for entry in self._items.values() if entry.expires_at is not None]
        self._next_expiry = min(deadlines) if deadlines else None
        return len(expired)

    def _get_locked(self, key: str) -> Any:
        entry = self._live(key)
        if entry is None:
            self._stats.misses += 1
            raise KeyNotFoundError(key)
        self._items.move_to_end(key)
        self._stats.hits += 1
        return entry.value

    def _insert_locked(self, key: str, value: Any, expires_at: Optional[float]) -> None:
        entry = self._items.get(key)
        if entry is not None:
            entry.value = value
            entry.expires_at = expires_at
            self._items.move_to_end(key)
            self._note_expiry(expires_at)
            return

        max_size = self.config.max_size
        if max_size > 0 and len(self._items) >= max_size:
            # Expired entries go before any live one is evicted
            now = self._clock()
            if self._next_expiry is not None and now >= self._next_expiry:
                self._purge_expired_locked(now)
        while max_size > 0 and len(self._items) >= max_size:
            evicted, _ = self._items.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Evicted LRU key %s", evicted)
        self._items[key] = _Entry(value, expires_at)
        self._note_expiry(expires_at)

    # ---- Cache contract ----

    def get(self, key: str) -> Any:
        with self._lock:
            self._check_open("get")
            return self._get_locked(key)

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        with self._lock:
            self._check_open("set")
            self._insert_locked(key, value, self._expiry(ttl))

    def delete(self, key: str) -> None:
        with self._lock:
            self._check_open("delete")
            self._items.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            self._check_open("exists")
            return self._live(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._check_open("clear")
            self._items.clear()
            self._next_expiry = None

    def keys(self, pattern: str = "*") -> List[str]:
        with self._lock:
            self._check_open("keys")
            now = self._clock()
            return [
                key for key, entry in self._items.items()
                if not self._is_expired(entry, now) and match_pattern(key, pattern)
            ]

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            self._check_open("ttl")
            entry = self._live(key)
            if entry is None:
                raise KeyNotFoundError(key, op="ttl")
            if entry.expires_at is None:
                return None
            return max(0.0, entry.expires_at - self._clock())

    def expire(self, key: str, ttl: float) -> None:
        with self._lock:
            self._check_open("expire")
            entry = self._live(key)
            if entry is None:
                raise KeyNotFoundError(key, op="expire")
            entry.expires_at = self._expiry(ttl)
            self._items.move_to_end(key)
            self._note_expiry(entry.expires_at)

    def increment(self, key: str, delta: int = 1) -> int:
        with self._lock:
            self._check_open("increment")
            entry = self._live(key)
            if entry is None:
                self._insert_locked(key, delta, None)
                return delta

            current = entry.value
            if isinstance(current, bool) or not isinstance(current, int):
                raise CacheError("value is not an integer", op="increment", key=key)
            entry.value = current + delta
            self._items.move_to_end(key)
            return entry.value

    def get_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        with self._lock:
            self._check_open("get_multi")
            for key in keys:
                try:
                    result[key] = self._get_locked(key)
                except KeyNotFoundError:
                    continue
        return result

    def set_multi(self, items: Dict[str, Any], ttl: float = 0) -> None:
        with self._lock:
            self._check_open("set_multi")
            expires_at = self._expiry(ttl)
            for key, value in items.items():
                self._insert_locked(key, value, expires_at)

    def delete_multi(self, keys: Iterable[str]) -> None:
        with self._lock:
            self._check_open("delete_multi")
            for key in keys:
                self._items.pop(key, None)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                keys=len(self._items),
                evictions=self._stats.evictions,
            )

    def ping(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._items.clear()
            self._next_expiry = None
        self._stop.set()
        if self._cleaner is not None and self._cleaner is not threading.current_thread():
            self._cleaner.join(timeout=5)

    # ---- cleanup ----

    def cleanup_expired(self) -> int:
        """Remove every expired entry now. Returns the number removed."""
        with self._lock:
            if self._closed:
                return 0
            removed = self._purge_expired_locked(self._clock())
        if removed:
            logger.debug("Cleanup removed %d expired keys", removed)
        return removed

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self.config.cleanup_interval):
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Memory cache cleanup sweep failed")
