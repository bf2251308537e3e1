"""
Cache store adapters for the response cache.

``CacheStore`` is the contract the middleware stages depend on. Every public
operation is fail-open: backend errors and timeouts are logged, counted and
turned into the "absent" result so that caching never fails a request.
Backends only implement the raw primitives.
"""

import abc
import asyncio
import fnmatch
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, TYPE_CHECKING

import redis.asyncio as redis

from shared.errors import CacheStoreError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


T = TypeVar("T")

DEFAULT_OPERATION_TIMEOUT = 0.25
DEFAULT_INVALIDATION_TIMEOUT = 1.0


class CacheStore(abc.ABC):
    """Key-value store with per-entry TTL and glob-pattern bulk deletion."""

    backend = "abstract"

    def __init__(
        self,
        *,
        key_prefix: str = "petcare",
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        invalidation_timeout: float = DEFAULT_INVALIDATION_TIMEOUT,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.key_prefix = key_prefix
        self.operation_timeout = operation_timeout
        self.invalidation_timeout = max(invalidation_timeout, operation_timeout)
        self.metrics = metrics
        self.logger = get_logger("api.cache.store")
        self.available = False
        self._hits = 0
        self._misses = 0

    # Lifecycle

    async def start(self) -> None:
        """Open the backend connection. Never raises."""
        self.available = await self.health_check()
        if self.available:
            self.logger.info("Cache store started", backend=self.backend)
        else:
            self.logger.warning(
                "Cache store unreachable at startup; continuing in fail-open mode",
                backend=self.backend,
            )

    async def stop(self) -> None:
        """Release backend resources."""
        self.available = False
        self.logger.info("Cache store stopped", backend=self.backend)

    # Public fail-open contract

    async def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None on a miss or store failure."""
        value = await self._guard("get", lambda: self._get(self._namespaced(key)), None)
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store ``value`` under ``key`` for ``ttl_seconds``, replacing any prior value."""
        if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be a positive integer, got {ttl_seconds!r}")
        return await self._guard(
            "set", lambda: self._set(self._namespaced(key), value, ttl_seconds), False
        )

    async def delete_matching(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns the number deleted."""
        return await self._guard(
            "delete_matching",
            lambda: self._delete_matching(self._namespaced(pattern)),
            0,
            timeout=self.invalidation_timeout,
        )

    async def exists(self, key: str) -> bool:
        return await self._guard("exists", lambda: self._exists(self._namespaced(key)), False)

    async def delete(self, key: str) -> bool:
        return await self._guard("delete", lambda: self._delete(self._namespaced(key)), False)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Reset the TTL of an existing key."""
        if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be a positive integer, got {ttl_seconds!r}")
        return await self._guard(
            "expire", lambda: self._expire(self._namespaced(key), ttl_seconds), False
        )

    async def clear(self) -> bool:
        """Remove every entry in this store's namespace."""
        deleted = await self._guard(
            "clear",
            lambda: self._delete_matching(self._namespaced("*")),
            None,
            timeout=self.invalidation_timeout,
        )
        if deleted is None:
            return False
        self.logger.info("Cache cleared", backend=self.backend, keys_count=deleted)
        return True

    async def health_check(self) -> bool:
        ok = await self._guard("ping", self._ping, False)
        self.available = bool(ok)
        return self.available

    async def stats(self) -> Dict[str, Any]:
        """Adapter statistics plus whatever the backend reports."""
        lookups = self._hits + self._misses
        stats: Dict[str, Any] = {
            "backend": self.backend,
            "connected": self.available,
            "key_prefix": self.key_prefix,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }
        # Stats failures leave availability untouched.
        backend_stats = await self._guard(
            "stats",
            self._backend_stats,
            None,
            timeout=self.invalidation_timeout,
            track_availability=False,
        )
        if backend_stats is not None:
            stats.update(backend_stats)
        return stats

    # Helpers

    def _namespaced(self, key: str) -> str:
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    async def _guard(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        fallback: Any,
        *,
        timeout: Optional[float] = None,
        track_availability: bool = True,
    ) -> Any:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(call(), timeout or self.operation_timeout)
        except asyncio.TimeoutError:
            self._record_failure(operation, "timeout", start, track_availability)
            return fallback
        except Exception as exc:
            self._record_failure(operation, f"{type(exc).__name__}: {exc}", start, track_availability)
            return fallback

        if track_availability:
            self.available = True
        return result

    def _record_failure(self, operation: str, error: str, start: float, track_availability: bool = True) -> None:
        if track_availability:
            self.available = False
        self.logger.warning(
            "Cache store operation failed; degrading to no-op",
            backend=self.backend,
            operation=operation,
            error=error,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        if self.metrics:
            self.metrics.increment_counter("cache_errors_total", operation=operation)

    # Backend primitives

    @abc.abstractmethod
    async def _get(self, key: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def _set(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    @abc.abstractmethod
    async def _delete_matching(self, pattern: str) -> int: ...

    @abc.abstractmethod
    async def _exists(self, key: str) -> bool: ...

    @abc.abstractmethod
    async def _delete(self, key: str) -> bool: ...

    @abc.abstractmethod
    async def _expire(self, key: str, ttl_seconds: int) -> bool: ...

    @abc.abstractmethod
    async def _ping(self) -> bool: ...

    @abc.abstractmethod
    async def _backend_stats(self) -> Dict[str, Any]: ...


class RedisCacheStore(CacheStore):
    """Cache store backed by a shared Redis server."""

    backend = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        scan_batch_size: int = 500,
        client: Optional[redis.Redis] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.redis_url = redis_url
        self.scan_batch_size = scan_batch_size
        self._redis: Optional[redis.Redis] = client

    async def start(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.operation_timeout,
                socket_timeout=self.operation_timeout,
                health_check_interval=30,
            )
        await super().start()

    async def stop(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as exc:
                self.logger.warning("Error closing Redis connection", error=str(exc))
            self._redis = None
        await super().stop()

    def _client(self) -> redis.Redis:
        if self._redis is None:
            raise CacheStoreError("connect", "Redis cache store has not been started")
        return self._redis

    async def _get(self, key: str) -> Optional[str]:
        value = await self._client().get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def _set(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._client().set(key, value, ex=ttl_seconds))

    async def _delete_matching(self, pattern: str) -> int:
        # SCAN keeps the server responsive where KEYS would block it.
        client = self._client()
        deleted = 0
        batch: List[str] = []
        async for key in client.scan_iter(match=pattern, count=self.scan_batch_size):
            batch.append(key)
            if len(batch) >= self.scan_batch_size:
                deleted += await client.unlink(*batch)
                batch = []
        if batch:
            deleted += await client.unlink(*batch)
        return deleted

    async def _exists(self, key: str) -> bool:
        return await self._client().exists(key) == 1

    async def _delete(self, key: str) -> bool:
        return await self._client().delete(key) > 0

    async def _expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._client().expire(key, ttl_seconds))

    async def _ping(self) -> bool:
        return bool(await self._client().ping())

    async def _backend_stats(self) -> Dict[str, Any]:
        # DBSIZE is O(1) but counts the whole logical database, not just this namespace.
        client = self._client()
        info = await client.info("memory")
        return {
            "total_keys": await client.dbsize(),
            "used_memory": info.get("used_memory_human"),
        }


class MemoryCacheStore(CacheStore):
    """In-process cache store for local development and tests.

    Expiry uses a monotonic clock; pass ``clock`` to control time in tests.
    Entries are not shared across processes.
    """

    backend = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _live_keys(self) -> List[str]:
        return [key for key in list(self._entries) if self._live(key) is not None]

    async def _get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def _set(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._entries[key] = (value, self._clock() + ttl_seconds)
        return True

    async def _delete_matching(self, pattern: str) -> int:
        matched = [key for key in self._live_keys() if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    async def _exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def _delete(self, key: str) -> bool:
        if self._live(key) is None:
            return False
        del self._entries[key]
        return True

    async def _expire(self, key: str, ttl_seconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._entries[key] = (entry[0], self._clock() + ttl_seconds)
        return True

    async def _ping(self) -> bool:
        return True

    async def _backend_stats(self) -> Dict[str, Any]:
        return {"total_keys": len(self._live_keys())}


def create_cache_store(config: Any, metrics: Optional["MetricsCollector"] = None) -> CacheStore:
    """Build the configured cache store. Call ``start()`` before serving."""
    common = {
        "key_prefix": config.cache_key_prefix,
        "operation_timeout": config.cache_operation_timeout_ms / 1000,
        "metrics": metrics,
    }
    if config.cache_backend == "memory":
        return MemoryCacheStore(**common)
    return RedisCacheStore(config.redis_url, scan_batch_size=config.cache_scan_batch_size, **common)
