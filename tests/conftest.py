"""Shared pytest fixtures."""

import asyncio
from typing import Any

import pytest

from feedsync import (
    AsyncMemoryAdapter,
    FeedAccumulator,
    MutationExecutor,
    QueryCache,
    QueryClient,
)


class Gate:
    """A network call that resolves only when the test says so."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._outcome: Any = None
        self.calls: list[tuple[Any, ...]] = []

    async def __call__(self, *args: Any) -> Any:
        self.calls.append(args)
        await self._event.wait()
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    def resolve(self, outcome: Any) -> None:
        """Resolve with a Result, a plain value, or an exception to raise."""
        self._outcome = outcome
        self._event.set()


@pytest.fixture
def gate() -> Gate:
    """Create a fresh Gate for each test."""
    return Gate()


@pytest.fixture
def make_gate() -> type[Gate]:
    """Factory for tests that need several independent gates."""
    return Gate


@pytest.fixture
def cache() -> QueryCache:
    """Create a fresh QueryCache for each test."""
    return QueryCache(stale_time="5m")


@pytest.fixture
def feeds(cache: QueryCache) -> FeedAccumulator:
    """Create a FeedAccumulator over the test cache."""
    return FeedAccumulator(cache)


@pytest.fixture
def executor(cache: QueryCache) -> MutationExecutor:
    """Create a MutationExecutor over the test cache."""
    return MutationExecutor(cache)


@pytest.fixture
async def client():
    """Create a QueryClient and close it after the test."""
    query_client = QueryClient()
    yield query_client
    await query_client.close()


@pytest.fixture
def async_adapter() -> AsyncMemoryAdapter:
    """Create a fresh AsyncMemoryAdapter for each test."""
    return AsyncMemoryAdapter()


@pytest.fixture
def post() -> dict:
    """A published post as the feed endpoint returns it."""
    return {
        "id": "p1",
        "author_id": "u1",
        "status": "published",
        "is_liked": False,
        "likes_count": 3,
        "is_saved": False,
        "comments_count": 0,
    }
