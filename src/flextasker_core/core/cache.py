"""Two-tier response cache: Redis primary store with an in-memory fallback.

``Cache`` talks to Redis and raises on any problem. ``FallbackCache`` is a
bounded FIFO map living in process memory. ``CacheStore`` composes the two and
never raises: every primary-store failure is logged and degrades to the
fallback tier, so a Redis outage only makes responses slower.
"""

from __future__ import annotations

import fnmatch
import json
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis
from attrs import define, field, frozen
from beartype import beartype
from pydantic import Field
from redis.exceptions import RedisError

from ..models.base import BaseModelConfig
from .config import Settings, get_settings
from .logging_utils import get_logger

__all__ = [
    "Cache",
    "CacheEntry",
    "CacheNotConnectedError",
    "CacheStats",
    "CacheStore",
    "FallbackCache",
    "PrimaryCacheStats",
    "RedisType",
]

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisType
else:
    RedisType = redis.Redis

logger = get_logger(__name__)

Clock = Callable[[], float]


class CacheNotConnectedError(RuntimeError):
    """Raised by the primary tier when used before ``connect``."""


@frozen
class CacheConfig:
    """Immutable cache configuration."""

    url: str = field()
    prefix: str = field(default="")
    default_ttl: int = field(default=300)
    fallback_max_size: int = field(default=100)
    max_connections: int = field(default=10)

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheConfig:
        return cls(
            url=settings.redis_url,
            prefix=settings.redis_prefix,
            default_ttl=settings.cache_default_ttl,
            fallback_max_size=settings.cache_fallback_max_size,
        )


@define
class CacheEntry:
    """A cached payload and the moment it was stored."""

    key: str
    payload: Any
    stored_at: float
    ttl_seconds: int

    def is_expired(self, now: float) -> bool:
        """An entry is stale strictly after ``ttl_seconds`` have elapsed."""
        return now - self.stored_at > self.ttl_seconds

    def remaining_seconds(self, now: float) -> int:
        return max(0, int(self.ttl_seconds - (now - self.stored_at)))


class PrimaryCacheStats(BaseModelConfig):
    """Statistics reported by the Redis tier."""

    size: int = Field(..., ge=0, description="Keys owned by this service")
    max_size: int = Field(default=-1, description="-1: bounded by Redis memory")
    hits: int = Field(default=0, ge=0)
    misses: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    hit_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    memory_usage: int = Field(default=0, ge=0, description="Redis used_memory in bytes")


class CacheStats(BaseModelConfig):
    """Combined statistics for both cache tiers."""

    size: int = Field(..., ge=0, description="Entries across both tiers")
    max_size: int = Field(..., description="Capacity, -1 when unbounded")
    fallback_size: int = Field(default=0, ge=0)
    primary: PrimaryCacheStats | None = Field(default=None)


class Cache:
    """Redis cache tier with async support.

    Values are stored as a JSON envelope ``{"data", "timestamp", "ttl"}`` under
    ``<prefix>cache:<key>`` with a Redis TTL. The envelope age is checked again
    on read so an entry is never returned after its TTL even if Redis has not
    expired it yet.

    The constructor optionally accepts an *already-created*
    ``redis.asyncio.Redis`` instance; :py:meth:`connect` is then a no-op.
    """

    def __init__(
        self,
        config: CacheConfig,
        redis_client: RedisType | None = None,
        *,
        clock: Clock = time.time,
    ) -> None:
        self._config = config
        self._redis: RedisType | None = redis_client
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @beartype
    async def connect(self) -> None:
        """Create Redis connection pool."""
        if self._redis is not None:
            return

        self._redis = redis.from_url(
            self._config.url,
            max_connections=self._config.max_connections,
            decode_responses=True,
        )

    @beartype
    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis is None:
            return

        await self._redis.aclose()
        self._redis = None

    @property
    def is_connected(self) -> bool:
        """Check if cache is connected."""
        return self._redis is not None

    def _client(self) -> RedisType:
        if self._redis is None:
            raise CacheNotConnectedError("Cache not connected")
        return self._redis

    def format_key(self, key: str) -> str:
        return f"{self._config.prefix}cache:{key}"

    @beartype
    async def get(self, key: str) -> Any | None:
        """Get value from cache."""
        client = self._client()
        try:
            raw = await client.get(self.format_key(key))
        except RedisError:
            self._errors += 1
            raise

        if raw is None:
            self._misses += 1
            return None

        envelope = json.loads(raw)
        if self._clock() - envelope["timestamp"] > envelope["ttl"]:
            await client.delete(self.format_key(key))
            self._misses += 1
            return None

        self._hits += 1
        return envelope["data"]

    @beartype
    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Set value in cache with optional TTL in seconds."""
        client = self._client()
        ttl = ttl if ttl is not None else self._config.default_ttl
        envelope = json.dumps(
            {"data": value, "timestamp": self._clock(), "ttl": ttl}, default=str
        )
        try:
            result = await client.setex(self.format_key(key), ttl, envelope)
        except RedisError:
            self._errors += 1
            raise
        return bool(result)

    @beartype
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        result = await self._client().delete(self.format_key(key))
        return bool(result > 0)

    @beartype
    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        result = await self._client().exists(self.format_key(key))
        return bool(result > 0)

    @beartype
    async def ttl(self, key: str) -> int:
        """Seconds until the key expires; negative when absent or persistent."""
        return int(await self._client().ttl(self.format_key(key)))

    @beartype
    async def expire(self, key: str, seconds: int) -> bool:
        """Restart the entry's lifetime with a new TTL."""
        client = self._client()
        raw = await client.get(self.format_key(key))
        if raw is None:
            return False

        envelope = json.loads(raw)
        envelope.update(timestamp=self._clock(), ttl=seconds)
        result = await client.setex(self.format_key(key), seconds, json.dumps(envelope))
        return bool(result)

    @beartype
    async def keys(self, pattern: str = "*") -> list[str]:
        """Get all keys (without prefix) matching pattern."""
        client = self._client()
        strip = len(self.format_key(""))
        keys = []
        async for key in client.scan_iter(match=self.format_key(pattern)):
            keys.append(key[strip:])
        return keys

    @beartype
    async def clear_pattern(self, pattern: str) -> int:
        """Clear all keys matching pattern."""
        client = self._client()
        keys = [key async for key in client.scan_iter(match=self.format_key(pattern))]
        if keys:
            return int(await client.delete(*keys))
        return 0

    @beartype
    async def clear(self) -> int:
        """Clear every key owned by this cache."""
        return await self.clear_pattern("*")

    @beartype
    async def cleanup(self) -> int:
        """Purge entries whose envelope is past its TTL."""
        client = self._client()
        now = self._clock()
        removed = 0
        async for key in client.scan_iter(match=self.format_key("*")):
            raw = await client.get(key)
            if raw is None:
                continue
            envelope = json.loads(raw)
            if now - envelope["timestamp"] > envelope["ttl"]:
                removed += int(await client.delete(key))
        return removed

    @beartype
    async def get_stats(self) -> PrimaryCacheStats:
        """Key count, hit/miss counters and Redis memory usage."""
        client = self._client()
        size = 0
        async for _ in client.scan_iter(match=self.format_key("*")):
            size += 1

        memory_usage = 0
        try:
            info = await client.info("memory")
            memory_usage = int(info.get("used_memory", 0))
        except Exception as e:
            # Some Redis-compatible servers do not implement INFO sections
            logger.debug("Redis memory info unavailable: %s", e)

        total = self._hits + self._misses
        return PrimaryCacheStats(
            size=size,
            hits=self._hits,
            misses=self._misses,
            errors=self._errors,
            hit_rate=self._hits / total if total else 0.0,
            memory_usage=memory_usage,
        )

    @beartype
    async def health_check(self) -> bool:
        """Perform cache health check."""
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
            return True
        except RedisError:
            return False


class FallbackCache:
    """Bounded in-process map with FIFO eviction and lazy TTL expiry."""

    def __init__(self, max_size: int = 100, *, clock: Clock = time.time) -> None:
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        # Re-storing a key makes it the newest entry
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        self._entries[key] = CacheEntry(
            key=key, payload=value, stored_at=self._clock(), ttl_seconds=ttl_seconds
        )

    def get_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self.get_entry(key)
        return entry.payload if entry is not None else None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> int:
        doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def extend(self, key: str, ttl_seconds: int) -> bool:
        entry = self.get_entry(key)
        if entry is None:
            return False
        entry.stored_at = self._clock()
        entry.ttl_seconds = ttl_seconds
        return True

    def remaining(self, key: str) -> int:
        """Remaining seconds for ``key``, -1 when it is not cached."""
        entry = self.get_entry(key)
        if entry is None:
            return -1
        return entry.remaining_seconds(self._clock())

    def keys(self) -> list[str]:
        return list(self._entries)


class CacheStore:
    """Fault-tolerant cache used by the response cache middleware.

    Every operation tries the Redis tier first. Failures are logged at
    WARNING and the operation continues against the fallback map; no method
    raises.
    """

    def __init__(
        self,
        primary: Cache,
        fallback: FallbackCache | None = None,
        *,
        default_ttl: int = 300,
    ) -> None:
        self.primary = primary
        self.fallback = fallback if fallback is not None else FallbackCache()
        self.default_ttl = default_ttl

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, redis_client: RedisType | None = None
    ) -> CacheStore:
        settings = settings or get_settings()
        config = CacheConfig.from_settings(settings)
        return cls(
            Cache(config, redis_client),
            FallbackCache(config.fallback_max_size),
            default_ttl=config.default_ttl,
        )

    @beartype
    async def connect(self) -> None:
        try:
            await self.primary.connect()
        except (RedisError, OSError) as e:
            logger.warning("Redis unavailable, serving from fallback cache: %s", e)

    @beartype
    async def disconnect(self) -> None:
        try:
            await self.primary.disconnect()
        except (RedisError, OSError) as e:
            logger.warning("Error closing Redis connection: %s", e)

    @beartype
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store ``value``; falls back to process memory if Redis fails."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        try:
            await self.primary.set(key, value, ttl)
            logger.debug("Cache entry stored in Redis: key=%s ttl=%s", key, ttl)
        except Exception as e:
            logger.warning("Redis cache set failed, using fallback: key=%s error=%s", key, e)
            self.fallback.set(key, value, ttl)

    @beartype
    async def get(self, key: str) -> Any | None:
        """Return the cached value or ``None`` when absent or expired."""
        try:
            value = await self.primary.get(key)
            if value is not None:
                return value
        except Exception as e:
            logger.warning("Redis cache get failed, using fallback: key=%s error=%s", key, e)

        return self.fallback.get(key)

    @beartype
    async def delete(self, key: str) -> None:
        try:
            await self.primary.delete(key)
        except Exception as e:
            logger.warning("Redis cache delete failed: key=%s error=%s", key, e)
        self.fallback.delete(key)

    @beartype
    async def clear(self) -> None:
        try:
            await self.primary.clear()
        except Exception as e:
            logger.warning("Redis cache clear failed: %s", e)
        self.fallback.clear()

    @beartype
    async def clear_pattern(self, pattern: str) -> int:
        """Invalidate every key matching a glob pattern in both tiers."""
        removed = 0
        try:
            removed += await self.primary.clear_pattern(pattern)
        except Exception as e:
            logger.warning("Redis cache invalidation failed: pattern=%s error=%s", pattern, e)
        removed += self.fallback.delete_matching(pattern)
        return removed

    @beartype
    async def cleanup(self) -> int:
        """Purge expired entries from both tiers."""
        removed = 0
        try:
            removed += await self.primary.cleanup()
        except Exception as e:
            logger.warning("Redis cache cleanup failed: %s", e)
        removed += self.fallback.cleanup()
        if removed:
            logger.debug("Cache cleanup removed %d expired entries", removed)
        return removed

    @beartype
    async def exists(self, key: str) -> bool:
        try:
            if await self.primary.exists(key):
                return True
        except Exception as e:
            logger.warning("Redis cache exists failed: key=%s error=%s", key, e)
        return self.fallback.get_entry(key) is not None

    @beartype
    async def get_ttl(self, key: str) -> int:
        """Remaining seconds for ``key``, -1 when it is not cached."""
        try:
            remaining = await self.primary.ttl(key)
            if remaining >= 0:
                return remaining
        except Exception as e:
            logger.warning("Redis cache ttl failed: key=%s error=%s", key, e)

        return self.fallback.remaining(key)

    @beartype
    async def extend(self, key: str, ttl_seconds: int) -> bool:
        try:
            if await self.primary.expire(key, ttl_seconds):
                return True
        except Exception as e:
            logger.warning("Redis cache extend failed: key=%s error=%s", key, e)
        return self.fallback.extend(key, ttl_seconds)

    @beartype
    async def is_primary_available(self) -> bool:
        return await self.primary.health_check()

    @beartype
    async def get_stats(self) -> CacheStats:
        fallback_size = len(self.fallback)
        try:
            primary = await self.primary.get_stats()
        except Exception as e:
            logger.warning("Redis cache stats unavailable: %s", e)
            return CacheStats(
                size=fallback_size,
                max_size=self.fallback.max_size,
                fallback_size=fallback_size,
            )

        return CacheStats(
            size=primary.size + fallback_size,
            max_size=primary.max_size,
            fallback_size=fallback_size,
            primary=primary,
        )
