"""
Shared fixtures for API service tests.
"""

from typing import Dict

import pytest

from service_api.tests.support import CallCounter, FakeClock, UnreachableStore
from service_api.app.caching.store import MemoryCacheStore
from shared.metrics import MetricsCollector


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector("api")


@pytest.fixture
def store(clock, metrics) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock, metrics=metrics)


@pytest.fixture
def unreachable_store(metrics) -> UnreachableStore:
    return UnreachableStore(metrics=metrics)


@pytest.fixture
def counter() -> CallCounter:
    return CallCounter()


@pytest.fixture
def user_headers() -> Dict[str, Dict[str, str]]:
    return {
        "alice": {"X-User-Id": "alice"},
        "bob": {"X-User-Id": "bob"},
    }
