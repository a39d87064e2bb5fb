"""
Cache backends

Both backends store ``CacheEntry`` records and share TTL semantics: an entry
is live while ``now < created_at + ttl_seconds`` and a read never returns an
expired entry. The memory backend expires lazily on access; Redis expires
server-side and is checked again on read.
"""
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as redis
from cachetools import LRUCache
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheBackendError(Exception):
    """Backend storage failure (connection lost, serialization error)"""
    pass


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl_seconds: float

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheBackend(ABC):
    """Storage protocol behind the cache manager"""

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for key, or None"""
        pass

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix, returning the count"""
        pass

    async def close(self) -> None:
        pass


class MemoryCacheBackend(CacheBackend):
    """In-process LRU store with lazy expiry"""

    name = "memory"

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.time):
        self._store: LRUCache = LRUCache(maxsize=max_entries)
        self._clock = clock

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._store.pop(key, None)
            return None
        return entry

    async def set(self, entry: CacheEntry) -> None:
        self._store[entry.key] = entry

    async def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in list(self._store.keys()) if key.startswith(prefix)]
        for key in keys:
            self._store.pop(key, None)
        return len(keys)

    def __len__(self) -> int:
        return len(self._store)


class RedisCacheBackend(CacheBackend):
    """Shared Redis store. Values must be JSON serializable."""

    name = "redis"

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None,
                 clock: Callable[[], float] = time.time):
        if client is None and not redis_url:
            raise ValueError("RedisCacheBackend needs a redis_url or a client")
        self.redis_url = redis_url
        self._client = client
        self._clock = clock

    @property
    def client(self) -> redis.Redis:
        """Lazy initialization of Redis client"""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            safe_url = self.redis_url.split('@')[-1] if '@' in self.redis_url else self.redis_url
            logger.info(f"Redis cache backend using {safe_url}")
        return self._client

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self.client.get(key)
        except (RedisError, OSError) as e:
            raise CacheBackendError(f"Redis GET failed for {key}: {e}") from e
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            entry = CacheEntry(key=key, value=data["value"], created_at=data["created_at"],
                               ttl_seconds=data["ttl_seconds"])
        except (ValueError, KeyError, TypeError) as e:
            raise CacheBackendError(f"Corrupt cache entry for {key}: {e}") from e
        if entry.is_expired(self._clock()):
            return None
        return entry

    async def set(self, entry: CacheEntry) -> None:
        try:
            payload = json.dumps({
                "value": entry.value,
                "created_at": entry.created_at,
                "ttl_seconds": entry.ttl_seconds,
            })
        except (TypeError, ValueError) as e:
            raise CacheBackendError(f"Value for {entry.key} is not JSON serializable: {e}") from e
        try:
            await self.client.set(entry.key, payload, ex=max(1, math.ceil(entry.ttl_seconds)))
        except (RedisError, OSError) as e:
            raise CacheBackendError(f"Redis SET failed for {entry.key}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except (RedisError, OSError) as e:
            raise CacheBackendError(f"Redis DEL failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                deleted += await self.client.delete(key)
        except (RedisError, OSError) as e:
            raise CacheBackendError(f"Redis prefix delete failed for {prefix}: {e}") from e
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
