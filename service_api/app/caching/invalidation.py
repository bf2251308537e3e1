"""
Post-write cache invalidation stage.
"""

import asyncio
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Union, TYPE_CHECKING

from fastapi import Request, Response

from shared.logging import get_logger
from .keys import RequestValues
from .policies import InvalidationRule
from .store import CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


CallNext = Callable[[Request], Awaitable[Response]]
PatternFunction = Callable[[Request], Iterable[str]]
PatternSource = Union[str, InvalidationRule, PatternFunction]


class InvalidationStage:
    """Delete cache patterns once a mutating handler has succeeded.

    Patterns come from static strings, ``InvalidationRule``s filled from the
    request, or callables returning patterns. Nothing is deleted when the
    handler fails, and invalidation errors never change the response.
    """

    def __init__(
        self,
        store: CacheStore,
        sources: Sequence[PatternSource],
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.sources = list(sources)
        self.metrics = metrics
        self.logger = get_logger("api.cache.invalidation")

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        response = await call_next(request)
        if 200 <= response.status_code < 300:
            await self.invalidate(request)
        return response

    def resolve_patterns(self, request: Request) -> List[str]:
        """Concrete glob patterns for this request, skipping unresolvable ones."""
        values = RequestValues.from_request(request)
        patterns: List[str] = []
        for source in self.sources:
            if isinstance(source, str):
                patterns.append(source)
            elif isinstance(source, InvalidationRule):
                resolved, errors = source.resolve(values)
                patterns.extend(resolved)
                for error in errors:
                    self.logger.warning(
                        "Skipping invalidation pattern",
                        path=request.url.path,
                        reason=error.message,
                        **error.details,
                    )
            else:
                try:
                    patterns.extend(source(request))
                except Exception as exc:
                    self.logger.warning(
                        "Invalidation pattern function failed",
                        path=request.url.path,
                        function=getattr(source, "__name__", repr(source)),
                        error=str(exc),
                    )
        return list(dict.fromkeys(patterns))

    async def invalidate(self, request: Request) -> int:
        """Delete every resolved pattern; returns the number of keys removed."""
        start = time.perf_counter()
        patterns = self.resolve_patterns(request)
        if not patterns:
            return 0

        results = await asyncio.gather(
            *(self.store.delete_matching(pattern) for pattern in patterns),
            return_exceptions=True,
        )

        deleted = 0
        failed: List[str] = []
        for pattern, outcome in zip(patterns, results):
            if isinstance(outcome, Exception):
                failed.append(pattern)
                self.logger.error("Cache invalidation failed", pattern=pattern, error=str(outcome))
                continue
            deleted += outcome

        self.logger.info(
            "Cache invalidated",
            path=request.url.path,
            patterns=patterns,
            deleted_count=deleted,
            failed=failed,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        if self.metrics:
            self.metrics.increment_counter(
                "cache_invalidations_total", result="partial" if failed else "ok"
            )
            self.metrics.increment_counter("cache_keys_invalidated_total", deleted)
        return deleted


def invalidate_cache_middleware(
    store: CacheStore,
    patterns_or_fn: Union[PatternSource, Sequence[PatternSource]],
    *,
    metrics: Optional["MetricsCollector"] = None,
) -> InvalidationStage:
    """Build an invalidation stage from patterns, rules, or a pattern function."""
    if isinstance(patterns_or_fn, (str, InvalidationRule)) or callable(patterns_or_fn):
        sources: Sequence[PatternSource] = [patterns_or_fn]
    else:
        sources = list(patterns_or_fn)
    return InvalidationStage(store, sources, metrics=metrics)
