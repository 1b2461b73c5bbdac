"""Cache package: the Cache contract, memory and Redis tiers, and the orchestrator."""

from modcore.cache.base import Cache, CacheConfig, CacheStats, TierLevel
from modcore.cache.memory import MemoryCache, MemoryCacheConfig
from modcore.cache.redis_cache import RedisCache, RedisCacheConfig
from modcore.cache.multitier import MultiTierCache, MultiTierConfig
from modcore.cache.factory import build_cache, build_rbac_cache

__all__ = [
    "Cache", "CacheConfig", "CacheStats", "TierLevel",
    "MemoryCache", "MemoryCacheConfig",
    "RedisCache", "RedisCacheConfig",
    "MultiTierCache", "MultiTierConfig",
    "build_cache", "build_rbac_cache",
]
