"""
Cache administration endpoints.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from shared.errors import AuthenticationError, ValidationError
from shared.logging import get_logger
from ..caching.store import CacheStore


class ExpireRequest(BaseModel):
    """Body for ``PUT /api/cache/expire/{key}``."""

    ttl: Any = None


def require_user(request: Request) -> Dict[str, Any]:
    """Identity set on ``request.state`` by the authentication middleware."""
    user_info = getattr(request.state, "user_info", None)
    if not isinstance(user_info, dict) or not user_info.get("user_id"):
        raise AuthenticationError("Authentication required")
    return user_info


def _envelope(message: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def create_cache_admin_router(store: CacheStore) -> APIRouter:
    """Routes for inspecting and flushing the response cache."""
    router = APIRouter(prefix="/api/cache", tags=["cache"], dependencies=[Depends(require_user)])
    logger = get_logger("api.cache.admin")

    @router.get("/stats")
    async def cache_stats():
        """Get cache statistics."""
        return _envelope("Cache statistics retrieved", await store.stats())

    @router.delete("/key/{key}")
    async def delete_key(key: str, user: Dict[str, Any] = Depends(require_user)):
        """Delete a single cache entry."""
        deleted = await store.delete(key)
        logger.info("Cache key deleted by admin", key=key, deleted=deleted, user_id=user["user_id"])
        return _envelope("Cache entry deleted" if deleted else "Cache entry not found", {"deleted": deleted})

    @router.delete("/pattern/{pattern:path}")
    async def delete_pattern(pattern: str, user: Dict[str, Any] = Depends(require_user)):
        """Delete every cache entry matching a glob pattern."""
        count = await store.delete_matching(pattern)
        logger.info("Cache pattern cleared by admin", pattern=pattern, deleted_count=count, user_id=user["user_id"])
        return _envelope(f"Cleared {count} cache entries", {"deleted_count": count})

    @router.delete("/all")
    async def clear_all(user: Dict[str, Any] = Depends(require_user)):
        """Clear the whole response cache."""
        cleared = await store.clear()
        logger.warning("Cache cleared by admin", cleared=cleared, user_id=user["user_id"])
        return _envelope("All cache entries cleared" if cleared else "Failed to clear cache", {"cleared": cleared})

    @router.get("/exists/{key}")
    async def key_exists(key: str):
        """Check whether a key is cached."""
        return _envelope("Cache lookup completed", {"exists": await store.exists(key)})

    @router.put("/expire/{key}")
    async def expire_key(key: str, body: ExpireRequest):
        """Reset the TTL of a cached key."""
        ttl = body.ttl
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ValidationError("TTL must be a positive integer", {"ttl": ttl})
        updated = await store.expire(key, ttl)
        return _envelope("Expiry updated" if updated else "Cache key not found", {"updated": updated})

    return router
