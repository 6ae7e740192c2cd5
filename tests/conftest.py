"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from querysync import QueryClient, QueryOptions, RetryPolicy
from querysync.types import AbortSignal, QueryKey


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingFetcher:
    """Fetcher that counts calls and can be held open with a gate."""

    def __init__(self, value: Any = None, *, gated: bool = False) -> None:
        self.value = value
        self.calls = 0
        self.keys: list[QueryKey] = []
        self.signals: list[AbortSignal] = []
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def __call__(self, key: QueryKey, signal: AbortSignal) -> Any:
        self.calls += 1
        self.keys.append(key)
        self.signals.append(signal)
        await self.gate.wait()
        if callable(self.value):
            return self.value(key)
        if self.value is None:
            return {"key": list(key), "call": self.calls}
        return self.value


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at an arbitrary non-zero instant."""
    return FakeClock()


@pytest.fixture
def no_retry() -> QueryOptions:
    """Default options with retries disabled."""
    return QueryOptions(retry=RetryPolicy.none())


@pytest.fixture
async def client(clock: FakeClock, no_retry: QueryOptions) -> AsyncIterator[QueryClient]:
    """A client on the fake clock, closed after the test."""
    client = QueryClient(default_options=no_retry, clock=clock)
    yield client
    await client.close()


@pytest.fixture
def make_fetcher() -> type[RecordingFetcher]:
    """Factory for recording fetchers."""
    return RecordingFetcher


async def settle() -> None:
    """Let pending callbacks and freshly created tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def flush() -> Any:
    return settle
