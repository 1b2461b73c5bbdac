"""Builds the application cache from settings."""

import logging
from typing import Optional

from modcore.cache.base import Cache, TierLevel
from modcore.cache.memory import MemoryCache, MemoryCacheConfig
from modcore.cache.multitier import MultiTierCache, MultiTierConfig
from modcore.cache.redis_cache import RedisCache, RedisCacheConfig
from modcore.core.config import Settings, settings as default_settings

logger = logging.getLogger("modcore.cache")


def build_cache(settings: Optional[Settings] = None) -> MultiTierCache:
    """Create a memory L1 and, when enabled, a Redis L2 behind one orchestrator.

    The caller owns the returned cache and must close() it at shutdown.
    """
    settings = settings or default_settings

    cache = MultiTierCache(MultiTierConfig(
        default_ttl=settings.CACHE_DEFAULT_TTL,
        promote_l1=settings.CACHE_PROMOTE_L1,
        write_through=settings.CACHE_WRITE_THROUGH,
        write_back=settings.CACHE_WRITE_BACK,
        queue_size=settings.CACHE_QUEUE_SIZE,
        workers=settings.CACHE_WORKERS,
    ))
    cache.add_tier(
        MemoryCache(MemoryCacheConfig(
            default_ttl=settings.CACHE_DEFAULT_TTL,
            max_size=settings.CACHE_MEMORY_MAX_SIZE,
            cleanup_interval=settings.CACHE_CLEANUP_INTERVAL,
        )),
        TierLevel.L1,
    )

    if settings.CACHE_REDIS_ENABLED:
        cache.add_tier(
            RedisCache(RedisCacheConfig(
                default_ttl=settings.CACHE_DEFAULT_TTL,
                url=settings.REDIS_URL,
                pool_size=settings.REDIS_POOL_SIZE,
                max_retries=settings.REDIS_MAX_RETRIES,
                dial_timeout=settings.REDIS_DIAL_TIMEOUT,
                read_timeout=settings.REDIS_READ_TIMEOUT,
                write_timeout=settings.REDIS_WRITE_TIMEOUT,
            )),
            TierLevel.L2,
        )
        logger.info("Cache tiers: memory (L1) + redis (L2)")
    else:
        logger.info("Cache tiers: memory (L1) only")

    return cache


def build_rbac_cache(cache: Cache, settings: Optional[Settings] = None) -> Optional[Cache]:
    """The tier the RBAC service may cache permission sets in, or None.

    Permission sets are only cached in the Redis tier, which every process
    shares, so an invalidation in one process is seen by all of them. A
    process-local memory tier would keep serving a revoked permission in the
    other processes until its TTL ran out.
    """
    settings = settings or default_settings
    if not settings.RBAC_CACHE_ENABLED:
        return None
    if not settings.CACHE_REDIS_ENABLED:
        logger.info("RBAC permission cache off: it needs the shared Redis tier")
        return None
    return cache.tiers[-1]
