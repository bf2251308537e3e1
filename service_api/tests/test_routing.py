"""
Tests for staged routes and the declarative router.
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from service_api.app.caching.keys import CacheTTL
from service_api.app.caching.routing import StagedRoute, StagedRouter


def tracing_stage(name, trail):
    async def stage(request, call_next):
        trail.append(f"{name}:before")
        response = await call_next(request)
        trail.append(f"{name}:after")
        return response
    return stage


class TestStagedRoute:
    """Test stage chaining."""

    def test_stages_run_in_order(self, store):
        """Stages wrap the handler outermost first."""
        trail = []
        router = StagedRouter(store)

        @router.staged("/api/pets", tracing_stage("outer", trail), tracing_stage("inner", trail), methods=["GET"])
        async def pets():
            trail.append("handler")
            return []

        app = FastAPI()
        app.include_router(router)
        TestClient(app).get("/api/pets")

        assert trail == ["outer:before", "inner:before", "handler", "inner:after", "outer:after"]

    def test_stages_survive_include_router(self, store, counter):
        """Routes included under a prefix are still served from the cache."""
        router = StagedRouter(store)

        @router.cached("/api/pets/{pet_id}", "pet_data")
        async def pet_detail(pet_id: str):
            counter.hit("pet_detail")
            return {"id": pet_id}

        app = FastAPI()
        app.include_router(router, prefix="/v2")
        client = TestClient(app)

        first = client.get("/v2/api/pets/42")
        second = client.get("/v2/api/pets/42")

        assert first.status_code == second.status_code == 200
        assert second.json() == {"id": "42"}
        assert counter["pet_detail"] == 1

    def test_plain_route_has_no_stages(self):
        """Without stages the handler is unchanged."""
        assert StagedRoute.stages == ()
        assert StagedRoute.with_stages().stages == ()


class TestStagedRouter:
    """Test router helpers."""

    def test_named_policy_ttl(self, store):
        """Named policies carry their own TTL."""
        router = StagedRouter(store, default_ttl=60)

        @router.cached("/api/statistics/me", "statistics")
        async def stats():
            return {}

        assert router.routes[0].stages[0].ttl == CacheTTL.LONG

    def test_default_ttl(self, store):
        """Routes without a policy use the router default."""
        router = StagedRouter(store, default_ttl=60)

        @router.cached("/api/misc")
        async def misc():
            return {}

        assert router.routes[0].stages[0].ttl == 60

    def test_invalidating_route_method(self, store):
        """Invalidating routes default to POST."""
        router = StagedRouter(store)

        @router.invalidates("/api/community/posts", "community:*")
        async def create_post():
            return {}

        route = router.routes[0]
        assert route.methods == {"POST"}
        assert route.stages[0].sources == ["community:*"]
