"""
Dual-layer cache for the ENS gateway.

This module composes two independently failing storage backends behind one
interface:
- A process-local TTL cache (always present, authoritative for this process)
- An optional shared persistent backend (Redis)

Reads go local first and promote persistent hits into the local tier.
Writes go local synchronously and then, best effort, to the persistent tier.
Persistent-tier failures are logged and never reach the caller, so losing
Redis degrades the gateway to local-only caching.
"""

import json
import re
import time
from typing import Any, Callable, NamedTuple, Optional, Protocol, runtime_checkable

import redis.asyncio as redis
from cachetools import TLRUCache
from redis.exceptions import RedisError

from .audit_logger import AuditLogger
from .enums import ErrorCode, LogLevel
from .exceptions import CacheBackendError
from .models import CacheStats


# Connect and read timeout for the Redis client, in seconds
REDIS_SOCKET_TIMEOUT = 2.0

REDIS_SCAN_COUNT = 500

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters so ``text`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class _LocalEntry(NamedTuple):
    value: Any
    ttl: float


class LocalCache:
    """
    Bounded in-process cache with a TTL per entry.

    Expiry is handled by ``cachetools.TLRUCache``: each entry carries its own
    time-to-use computed from the TTL given at write time.
    """

    def __init__(
        self,
        default_ttl: float = 300,
        max_entries: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._cache: TLRUCache = TLRUCache(
            maxsize=max_entries,
            ttu=lambda _key, entry, now: now + entry.ttl,
            timer=timer,
        )

    def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        effective_ttl = ttl if ttl is not None else self._default_ttl
        self._cache[key] = _LocalEntry(value, effective_ttl)

    def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def keys(self) -> list[str]:
        self._cache.expire()
        return list(self._cache.keys())

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)


@runtime_checkable
class PersistentBackend(Protocol):
    """
    Shared key-value store holding serialized cache values.

    Implementations raise CacheBackendError when the store is unreachable and
    return None from ``get`` only when the key is absent.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def keys(self, pattern: str) -> list[str]:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def close(self) -> None:
        ...


class RedisBackend:
    """PersistentBackend on top of ``redis.asyncio``."""

    def __init__(
        self,
        url: str,
        client: Optional[redis.Redis] = None,
        socket_timeout: float = REDIS_SOCKET_TIMEOUT,
    ) -> None:
        """
        Initialize the Redis backend.

        Args:
            url: Redis connection URL (redis://[:password@]host:port/db)
            client: Optional pre-built client (connection is lazy either way)
            socket_timeout: Connect and command timeout in seconds
        """
        self._url = url
        self._client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError) as e:
            raise self._backend_error("get", e) from e

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            if ttl_seconds:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
        except (RedisError, OSError) as e:
            raise self._backend_error("set", e) from e

    async def keys(self, pattern: str) -> list[str]:
        try:
            return [
                key async for key in self._client.scan_iter(match=pattern, count=REDIS_SCAN_COUNT)
            ]
        except (RedisError, OSError) as e:
            raise self._backend_error("keys", e) from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except (RedisError, OSError) as e:
            raise self._backend_error("delete", e) from e

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            raise self._backend_error("close", e) from e

    def _backend_error(self, operation: str, error: Exception) -> CacheBackendError:
        return CacheBackendError(
            code=ErrorCode.CACHE_BACKEND.value,
            message=f"Redis {operation} failed: {error}",
            details={"operation": operation, "url": self._url},
        )


class DualLayerCache:
    """
    Read-through / write-through cache over a local and a persistent tier.

    Counters:
    - hits: served from either tier
    - misses: absent from both tiers
    - sets: writes accepted (the local write always succeeds)
    """

    def __init__(
        self,
        local: Optional[LocalCache] = None,
        persistent: Optional[PersistentBackend] = None,
        default_ttl: int = 300,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the dual-layer cache.

        Args:
            local: Process-local tier (created with ``default_ttl`` if omitted)
            persistent: Optional shared tier
            default_ttl: TTL in seconds for writes that do not pass one
            logger: Optional audit logger
        """
        self._default_ttl = default_ttl
        self._local = local or LocalCache(default_ttl=default_ttl)
        self._persistent = persistent
        self._logger = logger

        self._hits = 0
        self._misses = 0
        self._sets = 0

    @property
    def local(self) -> LocalCache:
        return self._local

    @property
    def has_persistent_tier(self) -> bool:
        return self._persistent is not None

    async def get(self, key: str) -> Optional[Any]:
        """
        Look up ``key``, local tier first.

        A persistent hit is promoted into the local tier before returning.
        """
        value = self._local.get(key)
        if value is not None:
            self._hits += 1
            return value

        if self._persistent is not None:
            try:
                raw = await self._persistent.get(key)
                if raw is not None:
                    parsed = json.loads(raw)
                    self._local.set(key, parsed, self._default_ttl)
                    self._hits += 1
                    return parsed
            except CacheBackendError as e:
                self._log_backend_error("get", key, e)
            except ValueError as e:
                self._log_backend_error("decode", key, e)

        self._misses += 1
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Store ``value`` in both tiers.

        The local write is synchronous; the persistent write is best effort.
        """
        effective_ttl = ttl if ttl is not None else self._default_ttl
        self._local.set(key, value, effective_ttl)

        if self._persistent is not None:
            try:
                await self._persistent.set(key, json.dumps(value), max(1, int(effective_ttl)))
            except CacheBackendError as e:
                self._log_backend_error("set", key, e)

        self._sets += 1

    async def invalidate(self, pattern: str) -> int:
        """
        Remove every key containing ``pattern`` from both tiers.

        Returns:
            Number of local keys removed
        """
        removed = 0
        for key in self._local.keys():
            if pattern in key and self._local.delete(key):
                removed += 1

        if self._persistent is not None:
            try:
                keys = await self._persistent.keys(f"*{escape_glob(pattern)}*")
                if keys:
                    await self._persistent.delete(*keys)
            except CacheBackendError as e:
                self._log_backend_error("invalidate", pattern, e)

        self._log(
            LogLevel.DEBUG,
            f"Invalidated keys matching '{pattern}'",
            {"pattern": pattern, "local_removed": removed},
        )
        return removed

    def get_stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            sets=self._sets,
            memory_keys=len(self._local),
            persistent_backend="redis" if self._persistent is not None else "none",
        )

    async def close(self) -> None:
        """Drop the local tier and close the persistent backend."""
        self._local.clear()
        if self._persistent is not None:
            try:
                await self._persistent.close()
            except CacheBackendError as e:
                self._log_backend_error("close", "", e)

    def _log_backend_error(self, operation: str, key: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(
                "DualLayerCache",
                f"Persistent cache {operation} error",
                error=error,
                additional_data={"key": key},
            )

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "DualLayerCache", message, data)
