"""
Response cache for geocoding results and hazard scores.
"""

from .backends import CacheBackend, CacheBackendError, CacheEntry, MemoryCacheBackend, RedisCacheBackend
from .cache_manager import CacheCategory, CacheManager, DEFAULT_CATEGORY_TTLS

__all__ = [
    'CacheBackend', 'CacheBackendError', 'CacheEntry', 'MemoryCacheBackend', 'RedisCacheBackend',
    'CacheCategory', 'CacheManager', 'DEFAULT_CATEGORY_TTLS',
]
