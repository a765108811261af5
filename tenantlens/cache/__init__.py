"""
TenantLens Cache Module

Persistent stale-while-revalidate cache for directory API reads.

Usage:
    from tenantlens.cache import PersistentCache, CacheTTL

    cache = PersistentCache(database)
    await cache.open()
    data = await cache.get_or_fetch("licenses", "licenses", fetch_licenses)
"""

from .config import CacheConfig, CacheTTL
from .persistent_cache import CacheStats, FetchTask, PersistentCache

__all__ = [
    "CacheConfig",
    "CacheTTL",
    "CacheStats",
    "FetchTask",
    "PersistentCache",
]
