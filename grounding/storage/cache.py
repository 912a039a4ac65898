"""
Cache Backends

TTL read caches shared by the grounding services:
- Memories (by id)
- Student profiles
- Knowledge search results
- Educational sources
- Context optimization results

InMemoryCache is the per-process default. CacheService is the Redis
backend and can be swapped in without changing call sites.
"""

import fnmatch
import hashlib
import json
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from grounding.clock import Clock, utc_now
from grounding.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class BaseCache:
    """
    Shared cache interface.

    Subclasses implement get/set/delete/delete_pattern over string values;
    JSON helpers and key builders live here.
    """

    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def delete_pattern(self, pattern: str) -> int:
        raise NotImplementedError

    async def invalidate(self, *keys: str) -> None:
        """Delete several keys."""
        for key in keys:
            await self.delete(key)

    # =========================================================================
    # JSON Operations
    # =========================================================================

    async def get_json(self, key: str) -> Any:
        """Get and deserialize JSON value."""
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Serialize and set JSON value."""
        try:
            serialized = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("JSON serialization failed", key=key, error=str(e))
            return False
        return await self.set(key, serialized, ttl=ttl)

    # =========================================================================
    # Keys
    # =========================================================================

    @staticmethod
    def hash_key(text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()[:16]

    @staticmethod
    def memory_key(memory_id: Any) -> str:
        return f"memory:{memory_id}"

    @staticmethod
    def profile_key(user_id: Any) -> str:
        return f"profile:{user_id}"

    @classmethod
    def knowledge_search_key(cls, signature: str) -> str:
        return f"knowledge:search:{cls.hash_key(signature)}"

    @staticmethod
    def source_key(source_id: Any) -> str:
        return f"knowledge:source:{source_id}"

    @classmethod
    def optimization_key(cls, signature: str) -> str:
        return f"optimization:{cls.hash_key(signature)}"


class InMemoryCache(BaseCache):
    """
    In-process TTL cache.

    Expiry is evaluated lazily against the injected clock. Writes also
    sweep every expired entry once per purge interval.
    """

    def __init__(self, clock: Clock | None = None, purge_interval_seconds: int = 60):
        self._clock = clock or utc_now
        self._store: dict[str, tuple[str, datetime | None]] = {}
        self._purge_interval = timedelta(seconds=purge_interval_seconds)
        self._next_purge = self._clock() + self._purge_interval

    def _expired(self, expires_at: datetime | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        now = self._clock()
        if now >= self._next_purge:
            removed = self.purge_expired()
            self._next_purge = now + self._purge_interval
            if removed:
                logger.debug("Expired cache entries purged", removed=removed)

        expires_at = now + timedelta(seconds=ttl) if ttl else None
        self._store[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        keys = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
        for key in keys:
            del self._store[key]
        return len(keys)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        expired = [k for k, (_, exp) in self._store.items() if self._expired(exp)]
        for key in expired:
            del self._store[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


class CacheService(BaseCache):
    """
    Async Redis cache.

    Degrades to a no-op cache while disconnected: reads miss and writes
    report failure, so callers fall through to the store.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._client: redis.Redis | None = None
        self._connected = False

    @retry(
        retry=retry_if_exception_type((RedisError, OSError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _ping(self) -> None:
        await self._client.ping()

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is not None:
            logger.warning("Redis client already initialized")
            return

        logger.info("Connecting to Redis", url=self.settings.redis_url)

        self._client = redis.from_url(
            self.settings.redis_url,
            password=self.settings.redis_password or None,
            db=self.settings.redis_db,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await self._ping()
            self._connected = True
            logger.info("Redis connection established")
        except (RedisError, OSError) as e:
            # Cache is optional
            logger.error("Failed to connect to Redis", error=str(e))
            self._client = None

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._connected = False
            logger.info("Redis connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def get(self, key: str) -> str | None:
        if not self.is_connected:
            return None
        try:
            return await self._client.get(key)
        except (RedisError, OSError) as e:
            logger.warning("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        if not self.is_connected:
            return False
        try:
            await self._client.set(key, value, ex=ttl)
            return True
        except (RedisError, OSError) as e:
            logger.warning("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if not self.is_connected:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisError, OSError) as e:
            logger.warning("Cache delete failed", key=key, error=str(e))
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern."""
        if not self.is_connected:
            return 0
        try:
            keys = [key async for key in self._client.scan_iter(match=pattern)]
            if keys:
                return await self._client.delete(*keys)
            return 0
        except (RedisError, OSError) as e:
            logger.warning("Cache delete_pattern failed", pattern=pattern, error=str(e))
            return 0

    async def health_check(self) -> bool:
        if not self.is_connected:
            return False
        try:
            await self._client.ping()
            return True
        except (RedisError, OSError):
            return False


# Global cache instance
_cache: BaseCache | None = None


async def get_cache() -> BaseCache:
    """
    Get the global cache instance.

    The backend is chosen by settings.cache_backend.
    """
    global _cache

    if _cache is None:
        settings = get_settings()
        if settings.cache_backend == "redis":
            service = CacheService(settings)
            await service.connect()
            _cache = service
        else:
            _cache = InMemoryCache()

    return _cache


async def close_cache() -> None:
    """Close the global cache connection."""
    global _cache

    if isinstance(_cache, CacheService):
        await _cache.disconnect()
    _cache = None
