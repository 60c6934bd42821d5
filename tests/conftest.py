from datetime import datetime, timezone

import pytest

from ab_testing import ABTestingService
from context_filter import ContextAwareFilter
from graph_recommender import GraphRecommender
from memory_store import InMemoryCatalogStore, InMemoryExperimentRepository

FIXED_NOW = datetime(2026, 3, 4, 20, 15, tzinfo=timezone.utc)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the assignment lock."""

    def __init__(self):
        self.store = {}

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def ping(self):
        return True


@pytest.fixture
def catalog():
    return InMemoryCatalogStore()


@pytest.fixture
def recommender(catalog):
    return GraphRecommender(catalog)


@pytest.fixture
def context_filter(catalog):
    return ContextAwareFilter(catalog, now=lambda: FIXED_NOW)


@pytest.fixture
def repository():
    return InMemoryExperimentRepository()


@pytest.fixture
def ab_service(repository):
    return ABTestingService(repository)


@pytest.fixture
def fake_redis():
    return FakeRedis()
