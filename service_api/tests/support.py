"""
Test doubles and request builders shared by the API service tests.
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from service_api.app.caching.store import MemoryCacheStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class UnreachableStore(MemoryCacheStore):
    """Memory store whose backend always fails, like a Redis that is down."""

    async def _get(self, key):
        raise ConnectionError("connection refused")

    async def _set(self, key, value, ttl_seconds):
        raise ConnectionError("connection refused")

    async def _delete_matching(self, pattern):
        raise ConnectionError("connection refused")

    async def _exists(self, key):
        raise ConnectionError("connection refused")

    async def _delete(self, key):
        raise ConnectionError("connection refused")

    async def _expire(self, key, ttl_seconds):
        raise ConnectionError("connection refused")

    async def _ping(self):
        raise ConnectionError("connection refused")


class CallCounter:
    """Counts handler invocations per name."""

    def __init__(self):
        self.calls: Dict[str, int] = {}

    def hit(self, name: str) -> int:
        self.calls[name] = self.calls.get(name, 0) + 1
        return self.calls[name]

    def __getitem__(self, name: str) -> int:
        return self.calls.get(name, 0)


def install_header_auth(app: FastAPI) -> None:
    """Populate ``request.state.user_info`` from an ``X-User-Id`` header."""

    @app.middleware("http")
    async def header_auth(request: Request, call_next):
        user_id = request.headers.get("X-User-Id")
        if user_id:
            request.state.user_info = {"user_id": user_id}
        return await call_next(request)


def make_request(
    path: str = "/api/pets/42",
    *,
    method: str = "GET",
    query: bytes = b"",
    path_params: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> Request:
    """Build a bare Starlette request for key and pattern tests."""
    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("10.0.0.7", 52100),
        "root_path": "",
        "path": path,
        "query_string": query,
        "headers": [],
        "path_params": path_params or {},
    }
    request = Request(scope)
    if user_id is not None:
        request.state.user_info = {"user_id": user_id}
    return request

