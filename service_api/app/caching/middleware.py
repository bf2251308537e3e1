"""
Read-through response cache stage.
"""

import json
import time
from typing import Awaitable, Callable, Optional, TYPE_CHECKING

from fastapi import Request, Response
from starlette.background import BackgroundTask, BackgroundTasks

from shared.errors import CacheSerializationError
from shared.logging import get_logger
from .keys import CacheTTL, KeyGenerator, default_key_generator
from .policies import CacheCondition, CachePolicy, is_ok
from .store import CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


CallNext = Callable[[Request], Awaitable[Response]]

writer_logger = get_logger("api.cache.writer")


class ResponseCacheStage:
    """Serve a stored response on hit; store the handler's response on miss.

    The stage does not look at the request method; route wiring only puts
    it in front of read routes. On a hit the handler is never invoked.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        resource: str = "default",
        ttl: int = CacheTTL.SHORT,
        key_generator: KeyGenerator = default_key_generator,
        condition: CacheCondition = is_ok,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if not isinstance(ttl, int) or ttl <= 0:
            raise ValueError(f"ttl must be a positive integer, got {ttl!r}")
        self.store = store
        self.resource = resource
        self.ttl = ttl
        self.key_generator = key_generator
        self.condition = condition
        self.metrics = metrics
        self.logger = get_logger("api.cache.middleware")

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        try:
            key = self.key_generator(request)
        except Exception as exc:
            self.logger.warning(
                "Cache key generation failed; bypassing cache",
                resource=self.resource,
                path=request.url.path,
                error=str(exc),
            )
            return await call_next(request)

        start = time.perf_counter()
        cached = await self._safe_get(key)
        cached_response = self._decode(key, cached) if cached is not None else None
        latency = time.perf_counter() - start
        self._record_lookup(key, hit=cached_response is not None, latency=latency)

        if cached_response is not None:
            return cached_response

        response = await call_next(request)

        if not self._eligible(request, response):
            return response

        try:
            payload = self._encode(response)
        except CacheSerializationError as exc:
            self.logger.info(
                "Response not cacheable",
                resource=self.resource,
                key=key,
                reason=exc.message,
            )
            return response

        self._schedule_write(response, key, payload)
        return response

    async def _safe_get(self, key: str) -> Optional[str]:
        """Look up a key, treating any store failure as a miss."""
        try:
            return await self.store.get(key)
        except Exception as exc:
            self.logger.warning("Cache lookup error", resource=self.resource, key=key, error=str(exc))
            return None

    def _eligible(self, request: Request, response: Response) -> bool:
        try:
            return bool(self.condition(request, response))
        except Exception as exc:
            self.logger.warning("Cache condition raised; not caching", resource=self.resource, error=str(exc))
            return False

    def _encode(self, response: Response) -> str:
        # Entries carry no status and always replay as 200.
        if response.status_code != 200:
            raise CacheSerializationError(f"Status {response.status_code} is not replayable")
        body = getattr(response, "body", None)
        if not isinstance(body, (bytes, bytearray)):
            raise CacheSerializationError("Response has no materialized body")
        try:
            text = bytes(body).decode("utf-8")
        except UnicodeDecodeError:
            raise CacheSerializationError("Response body is not UTF-8 text") from None
        return json.dumps({
            "media_type": response.headers.get("content-type", "application/json"),
            "body": text,
        })

    def _decode(self, key: str, cached: str) -> Optional[Response]:
        try:
            envelope = json.loads(cached)
            body = envelope["body"]
            media_type = envelope["media_type"]
        except (TypeError, ValueError, KeyError):
            self.logger.warning("Discarding unreadable cache entry", resource=self.resource, key=key)
            return None
        return Response(content=body, status_code=200, media_type=media_type)

    def _schedule_write(self, response: Response, key: str, payload: str) -> None:
        """Write the entry after the response has been sent."""
        if response.background is None:
            response.background = BackgroundTask(self._write, key, payload)
        else:
            tasks = BackgroundTasks([response.background])
            tasks.add_task(self._write, key, payload)
            response.background = tasks

    async def _write(self, key: str, payload: str) -> None:
        try:
            stored = await self.store.set(key, payload, self.ttl)
        except Exception as exc:
            writer_logger.error("Background cache write failed", resource=self.resource, key=key, error=str(exc))
            stored = False

        if stored:
            writer_logger.debug("Cached response", resource=self.resource, key=key, ttl=self.ttl)
        if self.metrics:
            self.metrics.increment_counter(
                "cache_writes_total", resource=self.resource, result="stored" if stored else "failed"
            )

    def _record_lookup(self, key: str, hit: bool, latency: float) -> None:
        self.logger.info(
            "cache_hit" if hit else "cache_miss",
            resource=self.resource,
            key=key,
            latency_ms=round(latency * 1000, 2),
        )
        if not self.metrics:
            return
        self.metrics.increment_counter(
            "cache_hits_total" if hit else "cache_misses_total", resource=self.resource
        )
        self.metrics.observe_histogram("cache_lookup_duration_seconds", latency, resource=self.resource)


def cache_middleware(
    store: CacheStore,
    policy: Optional[CachePolicy] = None,
    *,
    ttl: Optional[int] = None,
    key_generator: Optional[KeyGenerator] = None,
    condition: Optional[CacheCondition] = None,
    resource: Optional[str] = None,
    metrics: Optional["MetricsCollector"] = None,
) -> ResponseCacheStage:
    """Build a read-through cache stage.

    Explicit arguments override the policy; without a policy the stage keys
    by method, path, user and query and keeps entries for ``CacheTTL.SHORT``.
    """
    if policy is not None:
        ttl = ttl if ttl is not None else policy.ttl
        key_generator = key_generator or policy.key_for
        condition = condition or policy.condition
        resource = resource or policy.resource

    return ResponseCacheStage(
        store,
        resource=resource or "default",
        ttl=ttl if ttl is not None else CacheTTL.SHORT,
        key_generator=key_generator or default_key_generator,
        condition=condition or is_ok,
        metrics=metrics,
    )
