"""Cache contract shared by every tier and the multi-tier orchestrator."""

import fnmatch
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional


@dataclass
class CacheConfig:
    """Base configuration for all caches.

    TTLs are seconds. ``default_ttl`` is used whenever a caller passes ``ttl=0``.
    """
    default_ttl: float = 300.0


@dataclass
class CacheStats:
    """Counters reported by ``Cache.stats()``."""
    hits: int = 0
    misses: int = 0
    keys: int = 0
    evictions: int = 0
    errors: int = 0
    dropped: int = 0


class TierLevel(IntEnum):
    """Tier priority; lower levels are read first."""
    L1 = 1  # memory
    L2 = 2  # redis
    L3 = 3  # disk / remote


def match_pattern(key: str, pattern: str) -> bool:
    """Glob match with Redis KEYS semantics (``*``, ``?``, ``[...]``)."""
    if pattern == "*":
        return True
    return fnmatch.fnmatchcase(key, pattern)


class Cache(ABC):
    """Key/value cache with TTLs and atomic counters.

    ``ttl == 0`` means "use the configured default", ``ttl < 0`` means
    "never expire". Absent or expired keys raise ``KeyNotFoundError``.
    """

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the value stored under ``key``."""
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        """Store ``value`` under ``key``."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are not an error."""
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def keys(self, pattern: str = "*") -> List[str]:
        """Return live keys matching a glob pattern."""
        ...

    @abstractmethod
    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, or None if the key never expires."""
        ...

    @abstractmethod
    def expire(self, key: str, ttl: float) -> None:
        """Reset the lifetime of an existing key."""
        ...

    @abstractmethod
    def increment(self, key: str, delta: int = 1) -> int:
        """Atomically add ``delta``; an absent key starts from 0."""
        ...

    def decrement(self, key: str, delta: int = 1) -> int:
        return self.increment(key, -delta)

    @abstractmethod
    def get_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the subset of ``keys`` that are present."""
        ...

    @abstractmethod
    def set_multi(self, items: Dict[str, Any], ttl: float = 0) -> None:
        ...

    @abstractmethod
    def delete_multi(self, keys: Iterable[str]) -> None:
        ...

    @abstractmethod
    def stats(self) -> CacheStats:
        ...

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the cache is usable."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release background resources. Safe to call twice."""
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
