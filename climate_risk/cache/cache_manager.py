"""
Cache manager with per-category TTLs

Keys are namespaced as ``<prefix><category>:<parts...>``. The primary
backend is pluggable; when a shared backend fails, operations fall back to
an in-process backend and the failure is counted in ``errors``.
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .backends import CacheBackend, CacheBackendError, CacheEntry, MemoryCacheBackend

logger = logging.getLogger(__name__)


class CacheCategory(str, Enum):
    GEOCODING = "geocoding"
    HAZARD_SCORES = "hazard_scores"
    GEOGRAPHIC_BOUNDARIES = "geographic_boundaries"
    HISTORICAL_DISASTERS = "historical_disasters"
    CLIMATE_PROJECTIONS = "climate_projections"
    WEATHER_DATA = "weather_data"
    REAL_TIME_ALERTS = "real_time_alerts"
    API_HEALTH = "api_health"


# Upstream refresh cadence differs per category; these are tunable defaults
DEFAULT_CATEGORY_TTLS: Dict[CacheCategory, int] = {
    CacheCategory.GEOCODING: 30 * 24 * 3600,
    CacheCategory.HAZARD_SCORES: 3600,
    CacheCategory.GEOGRAPHIC_BOUNDARIES: 7 * 24 * 3600,
    CacheCategory.HISTORICAL_DISASTERS: 24 * 3600,
    CacheCategory.CLIMATE_PROJECTIONS: 30 * 24 * 3600,
    CacheCategory.WEATHER_DATA: 6 * 3600,
    CacheCategory.REAL_TIME_ALERTS: 300,
    CacheCategory.API_HEALTH: 60,
}

DEFAULT_TTL_SECONDS = 3600


class CacheManager:
    """Key/value cache with category TTLs and hit/miss accounting"""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        fallback: Optional[CacheBackend] = None,
        ttl_overrides: Optional[Dict[str, int]] = None,
        key_prefix: str = "climate:",
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self.backend = backend or MemoryCacheBackend(clock=clock)
        # Only a shared backend needs a local fallback
        if fallback is None and not isinstance(self.backend, MemoryCacheBackend):
            fallback = MemoryCacheBackend(clock=clock)
        self.fallback = fallback
        self.key_prefix = key_prefix

        self.category_ttls: Dict[CacheCategory, int] = dict(DEFAULT_CATEGORY_TTLS)
        for category, ttl in (ttl_overrides or {}).items():
            self.category_ttls[CacheCategory(category)] = int(ttl)

        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}

    def ttl_for(self, category: Optional[CacheCategory]) -> int:
        if category is None:
            return DEFAULT_TTL_SECONDS
        return self.category_ttls.get(CacheCategory(category), DEFAULT_TTL_SECONDS)

    def build_key(self, category: CacheCategory, *parts: Any) -> str:
        suffix = ":".join(str(part) for part in parts)
        return f"{self.key_prefix}{CacheCategory(category).value}:{suffix}"

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss"""
        entry = await self._call("get", key)
        if entry is None:
            self.stats["misses"] += 1
            logger.debug(f"Cache miss: {key}")
            return None
        self.stats["hits"] += 1
        logger.debug(f"Cache hit: {key}")
        return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None,
                  category: Optional[CacheCategory] = None) -> bool:
        """Store value. ``ttl`` wins over the category TTL. None values are not cached."""
        if value is None:
            return False
        ttl_seconds = ttl if ttl is not None else self.ttl_for(category)
        if ttl_seconds <= 0:
            return False
        entry = CacheEntry(key=key, value=value, created_at=self._clock(), ttl_seconds=ttl_seconds)
        await self._call("set", entry)
        self.stats["sets"] += 1
        return True

    async def delete(self, key: str) -> bool:
        deleted = bool(await self._call("delete", key))
        if deleted:
            self.stats["deletes"] += 1
        return deleted

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key))

    async def invalidate(self, category: CacheCategory) -> int:
        """Drop every entry in a category"""
        prefix = f"{self.key_prefix}{CacheCategory(category).value}:"
        deleted = await self._call("delete_prefix", prefix) or 0
        self.stats["deletes"] += deleted
        logger.info(f"Invalidated {deleted} cache entries in {CacheCategory(category).value}")
        return deleted

    async def clear(self) -> int:
        deleted = await self._call("delete_prefix", self.key_prefix) or 0
        self.stats["deletes"] += deleted
        return deleted

    async def _call(self, operation: str, *args):
        try:
            return await getattr(self.backend, operation)(*args)
        except CacheBackendError as e:
            self.stats["errors"] += 1
            if self.fallback is None:
                logger.error(f"Cache {operation} failed on {self.backend.name} backend: {e}")
                return None
            logger.warning(f"Cache {operation} failed on {self.backend.name} backend, using fallback: {e}")
            return await getattr(self.fallback, operation)(*args)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": (self.stats["hits"] / lookups) if lookups else 0.0,
            "backend": self.backend.name,
            "category_ttls": {category.value: ttl for category, ttl in self.category_ttls.items()},
        }

    def reset_stats(self) -> None:
        for key in self.stats:
            self.stats[key] = 0

    async def close(self) -> None:
        await self.backend.close()
        if self.fallback is not None:
            await self.fallback.close()
