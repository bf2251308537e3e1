"""
PetCare API service.

Hosts the response cache: the store lifecycle, the cache administration
routes, and the staged router that resource handlers are bound to.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from fastapi import FastAPI

from shared.base_service import BaseService
from .caching.policies import RESOURCE_BINDINGS, RouteBinding, find_uncovered_reads
from .caching.routing import StagedRouter
from .caching.store import CacheStore, create_cache_store
from .routes.cache_admin import create_cache_admin_router


class ApiService(BaseService):
    """API service with read-through response caching."""

    def __init__(self, cache_store: Optional[CacheStore] = None, **config_overrides: Any):
        super().__init__("api", 8000, **config_overrides)

        self.cache_store = cache_store or create_cache_store(self.config, metrics=self.metrics)
        if self.cache_store.metrics is None:
            self.cache_store.metrics = self.metrics
        self.manage(self.cache_store)

        uncovered = find_uncovered_reads(RESOURCE_BINDINGS)
        for write, read, key in uncovered:
            self.logger.warning(
                "Write route leaves cached read stale until TTL",
                write_route=write,
                read_route=read,
                key=key,
            )

        self.app.include_router(create_cache_admin_router(self.cache_store))

        self.app.state.api_service = self

    def register_resource_handlers(self, handlers: Mapping[str, Callable[..., Any]]) -> Dict[str, RouteBinding]:
        """Mount business handlers with the cache wiring declared for them.

        ``handlers`` maps binding names (``"pet_detail"``, ``"update_pet"``...)
        to endpoint functions. Call before the app starts serving.
        """
        router = StagedRouter(
            self.cache_store,
            metrics=self.metrics,
            default_ttl=self.config.cache_default_ttl,
        )
        bound = router.bind_handlers(handlers)
        self.app.include_router(router)
        self.logger.info("Resource handlers registered", routes=sorted(bound))
        return bound

    async def _check_dependencies(self) -> Dict[str, str]:
        # A degraded cache only costs latency, so it never fails the health check.
        healthy = await self.cache_store.health_check()
        return {"cache": "ok" if healthy else "degraded"}


def create_app(**kwargs: Any) -> FastAPI:
    """Create the API application."""
    return ApiService(**kwargs).app


if __name__ == "__main__":
    ApiService().run()
