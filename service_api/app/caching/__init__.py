"""
Response caching package.

Read routes sit behind a read-through cache stage; write routes sit behind
an invalidation stage that deletes the patterns coupled reads populate.
Every store failure degrades caching to a no-op, never to a request error.
"""

from .invalidation import InvalidationStage, invalidate_cache_middleware
from .keys import CacheTTL, KeyStrategy, KeyTemplate, default_key_generator
from .middleware import ResponseCacheStage, cache_middleware
from .policies import (
    CACHE_POLICIES,
    INVALIDATION_PATTERNS,
    RESOURCE_BINDINGS,
    CachePolicy,
    InvalidationRule,
    RouteBinding,
    find_uncovered_reads,
    invalidation_rules,
)
from .routing import StagedRoute, StagedRouter
from .store import CacheStore, MemoryCacheStore, RedisCacheStore, create_cache_store

__all__ = [
    "CACHE_POLICIES",
    "INVALIDATION_PATTERNS",
    "RESOURCE_BINDINGS",
    "CachePolicy",
    "CacheStore",
    "CacheTTL",
    "InvalidationRule",
    "InvalidationStage",
    "KeyStrategy",
    "KeyTemplate",
    "MemoryCacheStore",
    "RedisCacheStore",
    "ResponseCacheStage",
    "RouteBinding",
    "StagedRoute",
    "StagedRouter",
    "cache_middleware",
    "create_cache_store",
    "default_key_generator",
    "find_uncovered_reads",
    "invalidate_cache_middleware",
    "invalidation_rules",
]
