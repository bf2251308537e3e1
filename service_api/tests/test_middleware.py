"""
Tests for the read-through response cache stage.
"""

import json

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.testclient import TestClient
from starlette.background import BackgroundTask

from service_api.app.caching.keys import CacheTTL
from service_api.app.caching.middleware import ResponseCacheStage, cache_middleware
from service_api.app.caching.policies import CACHE_POLICIES
from service_api.app.caching.routing import StagedRouter
from service_api.tests.support import install_header_auth


def build_app(store, metrics, counter) -> FastAPI:
    """Small app with cached pet, profile and export routes."""
    app = FastAPI()
    install_header_auth(app)
    router = StagedRouter(store, metrics=metrics)

    @router.cached("/api/pets/{pet_id}", "pet_data")
    async def pet_detail(pet_id: str):
        calls = counter.hit("pet_detail")
        if pet_id == "missing":
            raise HTTPException(status_code=404, detail="Pet not found")
        if pet_id == "gone":
            return JSONResponse(status_code=404, content={"error": "gone"})
        return {"id": pet_id, "name": "Biscuit", "served": calls}

    @router.cached("/api/pets", "pet_data")
    async def pet_list(request: Request):
        counter.hit("pet_list")
        user_info = getattr(request.state, "user_info", None) or {}
        return {"owner": user_info.get("user_id"), "pets": []}

    @router.cached("/api/users/me", "user_data")
    async def profile(request: Request):
        counter.hit("profile")
        return {"user_id": request.state.user_info["user_id"]}

    @router.cached("/api/pets/{pet_id}/walks")
    async def start_walk(pet_id: str):
        calls = counter.hit("start_walk")
        return JSONResponse(status_code=201, content={"pet_id": pet_id, "walk": calls})

    @router.cached("/api/export")
    async def export():
        counter.hit("export")
        return StreamingResponse(iter([b"id,name\n", b"42,Biscuit\n"]), media_type="text/csv")

    app.include_router(router)
    return app


class TestReadThrough:
    """Test hit and miss behaviour."""

    @pytest.fixture
    def client(self, store, metrics, counter):
        return TestClient(build_app(store, metrics, counter))

    def test_hit_returns_stored_response(self, client, counter):
        """A hit replays the first response without calling the handler."""
        first = client.get("/api/pets/42")
        second = client.get("/api/pets/42")

        assert first.status_code == second.status_code == 200
        assert first.content == second.content
        assert second.json()["served"] == 1
        assert second.headers["content-type"] == "application/json"
        assert counter["pet_detail"] == 1

    def test_entry_stored_under_policy_key(self, client, store, user_headers):
        """The pet detail key comes from the policy template, scoped to the caller."""
        client.get("/api/pets/42", headers=user_headers["alice"])

        assert "petcare:pet:42:u=alice" in store._entries
        envelope = json.loads(store._entries["petcare:pet:42:u=alice"][0])
        assert envelope["media_type"] == "application/json"
        assert json.loads(envelope["body"])["id"] == "42"

    def test_anonymous_pet_read_uses_fallback_key(self, client, store):
        """Without a user the pet template cannot resolve and the anon key is used."""
        client.get("/api/pets/42")

        assert list(store._entries) == ["petcare:api:GET:/api/pets/42:anon:"]

    def test_users_do_not_share_pet_entries(self, client, counter, user_headers):
        """A second user reading the same pet id reaches the handler."""
        client.get("/api/pets/42", headers=user_headers["alice"])
        client.get("/api/pets/42", headers=user_headers["bob"])
        client.get("/api/pets/42", headers=user_headers["alice"])

        assert counter["pet_detail"] == 2

    def test_entry_expires(self, client, clock, counter):
        """After the policy TTL the handler runs again."""
        client.get("/api/pets/42")
        clock.advance(CacheTTL.MEDIUM)
        response = client.get("/api/pets/42")

        assert response.json()["served"] == 2
        assert counter["pet_detail"] == 2

    def test_http_exception_not_cached(self, client, counter):
        """Raised errors are never stored."""
        assert client.get("/api/pets/missing").status_code == 404
        assert client.get("/api/pets/missing").status_code == 404
        assert counter["pet_detail"] == 2

    def test_error_response_not_cached(self, client, store, counter):
        """Returned error responses are never stored."""
        assert client.get("/api/pets/gone").status_code == 404
        assert client.get("/api/pets/gone").status_code == 404
        assert counter["pet_detail"] == 2
        assert "petcare:pet:gone" not in store._entries

    def test_users_do_not_share_entries(self, client, counter, user_headers):
        """User-scoped keys keep each user's data apart."""
        alice = client.get("/api/users/me", headers=user_headers["alice"])
        bob = client.get("/api/users/me", headers=user_headers["bob"])
        alice_again = client.get("/api/users/me", headers=user_headers["alice"])

        assert alice.json() == {"user_id": "alice"}
        assert bob.json() == {"user_id": "bob"}
        assert alice_again.json() == {"user_id": "alice"}
        assert counter["profile"] == 2

    def test_anonymous_and_user_lists_are_separate(self, client, counter, user_headers):
        """An anonymous list is never served to a signed-in user."""
        anonymous = client.get("/api/pets")
        alice = client.get("/api/pets", headers=user_headers["alice"])

        assert anonymous.json()["owner"] is None
        assert alice.json()["owner"] == "alice"
        assert counter["pet_list"] == 2

    def test_created_response_not_cached(self, client, store, counter):
        """Only 200 responses are stored; a 201 keeps its status."""
        first = client.get("/api/pets/42/walks")
        second = client.get("/api/pets/42/walks")

        assert first.status_code == second.status_code == 201
        assert second.json()["walk"] == 2
        assert counter["start_walk"] == 2
        assert store._entries == {}

    def test_streaming_response_not_cached(self, client, store, counter):
        """Streaming bodies pass through untouched."""
        first = client.get("/api/export")
        second = client.get("/api/export")

        assert first.text == second.text == "id,name\n42,Biscuit\n"
        assert counter["export"] == 2
        assert store._entries == {}

    def test_corrupt_entry_treated_as_miss(self, client, store, counter, user_headers):
        """Unreadable entries are replaced on the next miss."""
        store._entries["petcare:pet:42:u=alice"] = ("{not json", store._clock() + 60)

        response = client.get("/api/pets/42", headers=user_headers["alice"])

        assert response.status_code == 200
        assert counter["pet_detail"] == 1
        assert json.loads(store._entries["petcare:pet:42:u=alice"][0])["media_type"] == "application/json"

    def test_metrics_recorded(self, client, metrics):
        """Hits, misses and writes are counted per resource."""
        client.get("/api/pets/42")
        client.get("/api/pets/42")
        client.get("/api/pets/42")

        assert metrics.sample_value("cache_misses_total", {"resource": "pet_data"}) == 1
        assert metrics.sample_value("cache_hits_total", {"resource": "pet_data"}) == 2
        assert metrics.sample_value("cache_writes_total", {"resource": "pet_data", "result": "stored"}) == 1
        assert metrics.sample_value("cache_lookup_duration_seconds_count", {"resource": "pet_data"}) == 3


class TestFailOpen:
    """Test that an unavailable store never fails a read."""

    @pytest.fixture
    def client(self, unreachable_store, metrics, counter):
        return TestClient(build_app(unreachable_store, metrics, counter))

    def test_reads_served_by_handler(self, client, counter, metrics):
        """Every request reaches the handler and succeeds."""
        assert client.get("/api/pets/42").status_code == 200
        assert client.get("/api/pets/42").status_code == 200

        assert counter["pet_detail"] == 2
        assert metrics.sample_value("cache_errors_total", {"operation": "get"}) == 2
        assert metrics.sample_value("cache_writes_total", {"resource": "pet_data", "result": "failed"}) == 2


class TestStageOptions:
    """Test stage construction and overrides."""

    def make_client(self, store, counter, stage) -> TestClient:
        app = FastAPI()
        router = StagedRouter(store)

        @router.staged("/api/community/posts", stage, methods=["GET"])
        async def posts():
            counter.hit("posts")
            return JSONResponse({"posts": []}, background=BackgroundTask(counter.hit, "audit"))

        app.include_router(router)
        return TestClient(app)

    def test_condition_controls_storage(self, store, counter):
        """A custom condition can veto caching."""
        stage = cache_middleware(store, condition=lambda request, response: "X-Cacheable" in request.headers)
        client = self.make_client(store, counter, stage)

        client.get("/api/community/posts")
        client.get("/api/community/posts")
        client.get("/api/community/posts", headers={"X-Cacheable": "1"})
        client.get("/api/community/posts", headers={"X-Cacheable": "1"})

        assert counter["posts"] == 3

    def test_condition_cannot_store_non_200(self, store, counter):
        """A permissive condition still never stores a status it would replay as 200."""
        app = FastAPI()
        router = StagedRouter(store)

        @router.staged("/api/community/posts", cache_middleware(store, condition=lambda request, response: True), methods=["GET"])
        async def create_post():
            counter.hit("posts")
            return JSONResponse(status_code=202, content={"queued": True})

        app.include_router(router)
        client = TestClient(app)

        assert client.get("/api/community/posts").status_code == 202
        assert client.get("/api/community/posts").status_code == 202
        assert counter["posts"] == 2
        assert store._entries == {}

    def test_key_generator_failure_bypasses_cache(self, store, counter):
        """A broken key generator serves uncached."""

        def broken(request):
            raise RuntimeError("no key")

        client = self.make_client(store, counter, cache_middleware(store, key_generator=broken))

        assert client.get("/api/community/posts").status_code == 200
        assert client.get("/api/community/posts").status_code == 200
        assert counter["posts"] == 2

    def test_existing_background_task_still_runs(self, store, counter):
        """The cache write is added alongside the handler's own task."""
        client = self.make_client(store, counter, cache_middleware(store))

        client.get("/api/community/posts")

        assert counter["audit"] == 1
        assert store._entries

    def test_policy_overrides(self, store):
        """Explicit arguments win over the policy."""
        stage = cache_middleware(store, CACHE_POLICIES["statistics"], ttl=60)

        assert stage.ttl == 60
        assert stage.resource == "statistics"

    def test_defaults(self, store):
        """Without a policy the stage is user-scoped with a short TTL."""
        stage = cache_middleware(store)

        assert stage.ttl == CacheTTL.SHORT
        assert stage.resource == "default"

    def test_invalid_ttl(self, store):
        """A stage needs a positive TTL."""
        with pytest.raises(ValueError):
            ResponseCacheStage(store, ttl=0)
