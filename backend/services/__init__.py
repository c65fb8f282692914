"""
Backend services for infrastructure shared by the API and workers.
"""

from backend.services.cache import CacheStore, InMemoryCacheStore, RedisCacheStore, get_cache_store

__all__ = [
    "CacheStore",
    "InMemoryCacheStore",
    "RedisCacheStore",
    "get_cache_store",
]
