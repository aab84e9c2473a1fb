"""
Cache providers for effective-permission sets.
"""

import json
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from shared.config import AuthorizationConfig
from shared.errors import ServiceError
from shared.logging import get_logger


class CacheProvider(Protocol):
    """Async key/value cache with per-entry TTL."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...


class NullCache:
    """Cache that stores nothing; every lookup is a miss."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        return None

    async def delete(self, key: str) -> bool:
        return False


class InMemoryCache:
    """Process-local TTL cache.

    Expired entries are dropped lazily on read. ``clock`` returns
    monotonic seconds and can be replaced in tests.
    """

    def __init__(self, default_ttl_seconds: Optional[int] = None, clock: Optional[Callable[[], float]] = None):
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires_at = self.clock() + ttl if ttl is not None else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheProvider:
    """Redis-backed cache storing JSON-encoded values.

    Redis errors are logged and reported as misses so a cache outage
    degrades to uncached evaluation.
    """

    def __init__(self, redis_url: str, default_ttl_seconds: int = 300, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self.logger = get_logger("authorization.cache.redis")
        self.redis: Optional[redis.Redis] = client

    @classmethod
    def from_config(cls, config: AuthorizationConfig) -> "RedisCacheProvider":
        return cls(config.redis_url, default_ttl_seconds=config.cache_ttl_seconds)

    async def start(self):
        """Connect and ping Redis."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
            await self.redis.ping()
            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ServiceError("Failed to start Redis cache", {"error": str(e)}) from e

    async def stop(self):
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis cache stopped")

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(key)
            if cached is None:
                return None
            return json.loads(cached)
        except Exception as e:
            self.logger.error("Error reading cache entry", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if self.redis is None:
            return
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        try:
            await self.redis.setex(key, ttl, json.dumps(value))
            self.logger.debug("Cached value", key=key, ttl=ttl)
        except Exception as e:
            self.logger.error("Error writing cache entry", key=key, error=str(e))

    async def delete(self, key: str) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.delete(key))
        except Exception as e:
            self.logger.error("Error deleting cache entry", key=key, error=str(e))
            return False

    async def health_check(self) -> bool:
        try:
            if self.redis is None:
                return False
            await self.redis.ping()
            return True
        except Exception as e:
            self.logger.error("Redis health check failed", error=str(e))
            return False
