"""
Caching and request-deduplication layer for dashboard market data.

The core is :class:`~market_cache.cache.CacheStore` (TTL entries, recency
eviction, tag invalidation) and :class:`~market_cache.coordinator.FetchCoordinator`
(get-or-fetch with one upstream call per key in flight).
"""

from market_cache.cache import CacheConfig, CacheEntry, CacheStats, CacheStore
from market_cache.coordinator import CacheResult, CacheSource, FetchCoordinator, WarmupItem

__all__ = [
    "CacheConfig",
    "CacheEntry",
    "CacheStats",
    "CacheStore",
    "CacheResult",
    "CacheSource",
    "FetchCoordinator",
    "WarmupItem",
]
