"""Tests for the fetch coordinator."""

import asyncio

import pytest

from querysync import (
    FatalFetchError,
    QueryOptions,
    QueryStatus,
    RetryPolicy,
    TransientFetchError,
    canonicalize,
)
from querysync.fetcher import FetchCoordinator
from querysync.store import CacheStore

KEY = ("user", 1)
CANONICAL = canonicalize(KEY)


class Flaky:
    """Fails with the given errors in order, then returns ``value``."""

    def __init__(self, *errors: BaseException, value: object = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self, key, signal):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


@pytest.fixture
def store(clock) -> CacheStore:
    return CacheStore(clock=clock)


@pytest.fixture
def coordinator(store: CacheStore) -> FetchCoordinator:
    return FetchCoordinator(store)


class TestDeduplication:
    """At most one fetch per key."""

    async def test_concurrent_requests_share_one_fetch(
        self, coordinator, store, make_fetcher, no_retry
    ) -> None:
        """Test that concurrent requests for a key share one task."""
        fetcher = make_fetcher("data", gated=True)

        first = coordinator.ensure_fresh(KEY, fetcher, no_retry)
        second = coordinator.ensure_fresh(KEY, fetcher, no_retry, force=True)
        await asyncio.sleep(0)

        assert first is second
        assert store.get(CANONICAL).status is QueryStatus.LOADING
        assert coordinator.is_fetching() == 1

        fetcher.gate.set()
        await first

        assert fetcher.calls == 1
        assert store.get(CANONICAL).data == "data"
        assert coordinator.is_fetching() == 0

    async def test_fresh_data_is_not_refetched(
        self, coordinator, store, clock, make_fetcher
    ) -> None:
        """Test that fresh data short-circuits ensure_fresh."""
        options = QueryOptions(stale_time="10s", retry=RetryPolicy.none())
        fetcher = make_fetcher("data")

        await coordinator.ensure_fresh(KEY, fetcher, options)
        clock.advance(9_999)
        assert coordinator.ensure_fresh(KEY, fetcher, options) is None

        clock.advance(1)
        task = coordinator.ensure_fresh(KEY, fetcher, options)
        assert task is not None
        await task
        assert fetcher.calls == 2

    async def test_force_ignores_freshness(
        self, coordinator, make_fetcher
    ) -> None:
        """Test that force=True refetches fresh data."""
        options = QueryOptions(stale_time="inf", retry=RetryPolicy.none())
        fetcher = make_fetcher("data")

        await coordinator.ensure_fresh(KEY, fetcher, options)
        await coordinator.ensure_fresh(KEY, fetcher, options, force=True)

        assert fetcher.calls == 2

    async def test_success_sets_timestamps(
        self, coordinator, store, clock, make_fetcher
    ) -> None:
        """Test that a successful fetch records updated_at and stale_at."""
        options = QueryOptions(stale_time="30s", retry=RetryPolicy.none())
        await coordinator.ensure_fresh(KEY, make_fetcher("data"), options)

        entry = store.get(CANONICAL)
        assert entry.status is QueryStatus.SUCCESS
        assert entry.updated_at == clock()
        assert entry.stale_at == clock() + 30_000
        assert entry.fetch_version == 1
        assert entry.error is None


class TestVersioning:
    """Superseded fetches never overwrite newer results."""

    async def test_superseded_result_is_discarded(
        self, coordinator, store, no_retry
    ) -> None:
        """Test that a result from an older version is ignored."""
        release_a = asyncio.Event()
        started_a = asyncio.Event()

        async def fetch_a(key, signal):
            started_a.set()
            try:
                await release_a.wait()
            except asyncio.CancelledError:
                # Ignore the cancellation and keep going
                await release_a.wait()
            return "A"

        async def fetch_b(key, signal):
            return "B"

        task_a = coordinator.ensure_fresh(KEY, fetch_a, no_retry)
        await started_a.wait()
        entry_a = store.get(CANONICAL)

        task_b = coordinator.ensure_fresh(
            KEY, fetch_b, no_retry, force=True, supersede=True
        )
        assert task_b is not task_a
        await task_b
        assert store.get(CANONICAL).data == "B"

        release_a.set()
        await asyncio.wait({task_a})

        entry = store.get(CANONICAL)
        assert entry.data == "B"
        assert entry.fetch_version == 2
        assert entry.status is QueryStatus.SUCCESS
        assert entry_a.fetch_version == 1

    async def test_supersede_aborts_signal(
        self, coordinator, make_fetcher, no_retry
    ) -> None:
        """Test that superseding aborts the previous fetch's signal."""
        fetcher = make_fetcher("data", gated=True)
        coordinator.ensure_fresh(KEY, fetcher, no_retry)
        await asyncio.sleep(0)

        task = coordinator.ensure_fresh(KEY, fetcher, no_retry, supersede=True)
        await asyncio.sleep(0)

        first_signal = fetcher.signals[0]
        assert first_signal.aborted
        assert first_signal.reason == "superseded"

        fetcher.gate.set()
        await task
        assert fetcher.calls == 2


class TestRetries:
    async def test_transient_errors_are_retried(self, coordinator, store) -> None:
        """Test that transient errors are retried until success."""
        options = QueryOptions(retry=RetryPolicy(max_retries=2, base_delay=0))
        fetcher = Flaky(TransientFetchError("timeout"), TransientFetchError("timeout"))

        await coordinator.ensure_fresh(KEY, fetcher, options)

        entry = store.get(CANONICAL)
        assert fetcher.calls == 3
        assert entry.status is QueryStatus.SUCCESS
        assert entry.data == "ok"
        assert entry.failure_count == 0

    async def test_retries_stay_in_one_version(self, coordinator, store) -> None:
        """Test that retries do not bump fetch_version."""
        options = QueryOptions(retry=RetryPolicy(max_retries=1, base_delay=0))
        await coordinator.ensure_fresh(KEY, Flaky(RuntimeError("flaky")), options)
        assert store.get(CANONICAL).fetch_version == 1

    async def test_fatal_errors_are_not_retried(self, coordinator, store) -> None:
        """Test that fatal errors settle after one attempt."""
        options = QueryOptions(retry=RetryPolicy(max_retries=3, base_delay=0))
        error = FatalFetchError("not found", status_code=404)
        fetcher = Flaky(error)

        await coordinator.ensure_fresh(KEY, fetcher, options)

        entry = store.get(CANONICAL)
        assert fetcher.calls == 1
        assert entry.status is QueryStatus.ERROR
        assert entry.error is error
        assert entry.failure_count == 1

    async def test_exhausted_retries_record_last_error(
        self, coordinator, store
    ) -> None:
        """Test that the last error is kept once retries run out."""
        options = QueryOptions(retry=RetryPolicy(max_retries=2, base_delay=0))
        last = TransientFetchError("third")
        fetcher = Flaky(TransientFetchError("first"), TransientFetchError("second"), last)

        await coordinator.ensure_fresh(KEY, fetcher, options)

        entry = store.get(CANONICAL)
        assert fetcher.calls == 3
        assert entry.status is QueryStatus.ERROR
        assert entry.error is last
        assert entry.failure_count == 3

    async def test_synchronous_failure_is_fatal(self, coordinator, store) -> None:
        """Test that a fetcher raising before awaiting is not retried."""
        options = QueryOptions(retry=RetryPolicy(max_retries=3, base_delay=0))
        calls = []

        def broken(key, signal):
            calls.append(key)
            raise ValueError("bad key")

        await coordinator.ensure_fresh(KEY, broken, options)

        entry = store.get(CANONICAL)
        assert len(calls) == 1
        assert isinstance(entry.error, FatalFetchError)
        assert isinstance(entry.error.__cause__, ValueError)

    async def test_non_awaitable_result_is_fatal(self, coordinator, store, no_retry) -> None:
        """Test that a fetcher returning a plain value is an error."""
        await coordinator.ensure_fresh(KEY, lambda key, signal: "plain", no_retry)
        entry = store.get(CANONICAL)
        assert isinstance(entry.error, FatalFetchError)
        assert "awaitable" in str(entry.error)

    async def test_error_keeps_previous_data(
        self, coordinator, store, make_fetcher, no_retry
    ) -> None:
        """Stale data stays readable after a failed refetch."""
        await coordinator.ensure_fresh(KEY, make_fetcher("v1"), no_retry)
        updated_at = store.get(CANONICAL).updated_at

        await coordinator.ensure_fresh(
            KEY, Flaky(RuntimeError("down")), no_retry, force=True
        )

        entry = store.get(CANONICAL)
        assert entry.status is QueryStatus.ERROR
        assert entry.data == "v1"
        assert entry.updated_at == updated_at
        assert str(entry.error) == "down"

    async def test_success_clears_error(self, coordinator, store, make_fetcher, no_retry) -> None:
        """Test that a later success clears the previous error."""
        await coordinator.ensure_fresh(KEY, Flaky(RuntimeError("down")), no_retry)
        await coordinator.ensure_fresh(KEY, make_fetcher("v2"), no_retry, force=True)

        entry = store.get(CANONICAL)
        assert entry.status is QueryStatus.SUCCESS
        assert entry.error is None


class TestCancellation:
    async def test_cancel_restores_previous_status(
        self, coordinator, store, make_fetcher, no_retry
    ) -> None:
        """Test that cancelling returns the entry to its settled status."""
        await coordinator.ensure_fresh(KEY, make_fetcher("v1"), no_retry)
        fetcher = make_fetcher("v2", gated=True)
        task = coordinator.ensure_fresh(KEY, fetcher, no_retry, force=True)
        await asyncio.sleep(0)

        assert coordinator.cancel(CANONICAL)
        await asyncio.wait({task})

        entry = store.get(CANONICAL)
        assert entry.status is QueryStatus.SUCCESS
        assert entry.data == "v1"
        assert fetcher.signals[0].aborted
        assert fetcher.signals[0].reason == "cancelled"
        assert not coordinator.cancel(CANONICAL)

    async def test_cancel_without_data_returns_to_idle(
        self, coordinator, store, make_fetcher, no_retry
    ) -> None:
        """Test that cancelling a first fetch leaves the entry idle."""
        task = coordinator.ensure_fresh(KEY, make_fetcher(gated=True), no_retry)
        await asyncio.sleep(0)

        coordinator.cancel(CANONICAL, "test")
        await asyncio.wait({task})

        assert store.get(CANONICAL).status is QueryStatus.IDLE

    async def test_removing_entry_aborts_fetch(
        self, coordinator, store, make_fetcher, no_retry
    ) -> None:
        """Test that removing an entry aborts its running fetch."""
        fetcher = make_fetcher(gated=True)
        task = coordinator.ensure_fresh(KEY, fetcher, no_retry)
        await asyncio.sleep(0)

        store.remove(CANONICAL)
        await asyncio.wait({task})

        assert fetcher.signals[0].reason == "entry removed"
        assert CANONICAL not in store
        assert coordinator.is_fetching() == 0

    async def test_wait_never_raises(self, coordinator, no_retry) -> None:
        """Test that wait returns even when the fetch failed."""
        coordinator.ensure_fresh(KEY, Flaky(RuntimeError("down")), no_retry)
        entry = await coordinator.wait(CANONICAL)
        assert entry.status is QueryStatus.ERROR

    async def test_close_aborts_everything(
        self, coordinator, make_fetcher, no_retry
    ) -> None:
        """Test that close aborts every in-flight fetch."""
        fetcher = make_fetcher(gated=True)
        coordinator.ensure_fresh(("a",), fetcher, no_retry)
        coordinator.ensure_fresh(("b",), fetcher, no_retry)
        await asyncio.sleep(0)

        await coordinator.close()

        assert coordinator.is_fetching() == 0
        assert [s.reason for s in fetcher.signals] == ["client closed", "client closed"]
