"""Tests for mutations, optimistic updates and rollback."""

import asyncio

import pytest

from querysync import MutationError, MutationOptions, QueryStatus

TODOS = ["todos"]


def append(todos, item):
    return [*(todos or []), item]


class TestOptimisticUpdates:
    async def test_failure_rolls_back(self, client) -> None:
        """Test that a failed mutation restores the snapshot."""
        original = ["a"]
        client.set_query_data(TODOS, original)
        during = []

        async def add_todo(item):
            during.append(client.get_query_data(TODOS))
            raise RuntimeError("server down")

        with pytest.raises(MutationError) as exc_info:
            await client.mutate(
                add_todo,
                "b",
                MutationOptions(related_keys=[TODOS], optimistic_update=append),
            )

        assert during == [["a", "b"]]
        assert client.get_query_data(TODOS) is original
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.variables == "b"

    async def test_rollback_notifies_observers(self, client, make_fetcher) -> None:
        """Test that observers see the optimistic value and the rollback."""
        observer = client.query(TODOS, make_fetcher(["a"]))
        await observer.wait()
        seen = []
        observer.subscribe(lambda entry: seen.append(entry.data))

        async def add_todo(item):
            raise RuntimeError("server down")

        with pytest.raises(MutationError):
            await client.mutate(
                add_todo, "b", related_keys=[TODOS], optimistic_update=append
            )

        assert seen == [["a", "b"], ["a"]]

    async def test_rollback_keeps_newer_data(self, client) -> None:
        """A value written during the mutation is not clobbered on rollback."""
        client.set_query_data(TODOS, ["a"])

        async def add_todo(item):
            client.set_query_data(TODOS, ["server"])
            raise RuntimeError("conflict")

        with pytest.raises(MutationError):
            await client.mutate(
                add_todo, "b", related_keys=[TODOS], optimistic_update=append
            )

        assert client.get_query_data(TODOS) == ["server"]

    async def test_failing_optimistic_update_is_reported(self, client) -> None:
        """Test that an updater error is raised as MutationError."""
        client.set_query_data(TODOS, ["a"])
        calls = []

        def bad_update(todos, item):
            raise KeyError("shape")

        with pytest.raises(MutationError, match="Optimistic update failed"):
            await client.mutate(
                calls.append, "b", related_keys=[TODOS], optimistic_update=bad_update
            )

        assert calls == []
        assert client.get_query_data(TODOS) == ["a"]

    async def test_optimistic_update_on_missing_key_is_retained(
        self, client, clock
    ) -> None:
        """Test that an optimistic entry for a new key gets a retention window."""

        async def add_todo(item):
            return item

        await client.mutate(
            add_todo, "b", related_keys=[TODOS], optimistic_update=append
        )

        entry = client.get_query_state(TODOS)
        assert entry.data == ["b"]
        assert entry.retain_until == clock() + client.default_options.gc_time_ms

    async def test_in_flight_fetch_is_cancelled(self, client, make_fetcher, flush) -> None:
        """Test that an optimistic update cancels the running fetch."""
        client.set_query_data(TODOS, ["a"])
        fetcher = make_fetcher(["stale"], gated=True)
        observer = client.query(TODOS, fetcher)
        await flush()
        signals = []

        async def add_todo(item):
            signals.append(fetcher.signals[0])
            return item

        await client.mutate(
            add_todo,
            "b",
            related_keys=[TODOS],
            optimistic_update=append,
            invalidate_related=False,
        )

        assert signals[0].aborted
        assert signals[0].reason == "optimistic update"
        assert observer.data == ["a", "b"]
        assert observer.status is QueryStatus.SUCCESS


class TestLifecycle:
    async def test_success_invalidates_related_queries(self, client, make_fetcher) -> None:
        """Test that success refetches related observed queries."""
        fetcher = make_fetcher(["a", "b"])
        observer = client.query(TODOS, fetcher, stale_time="1h")
        await observer.wait()

        async def add_todo(item):
            return {"id": 2, "title": item}

        result = await client.mutate(add_todo, "b", related_keys=[TODOS])

        assert result == {"id": 2, "title": "b"}
        assert observer.status is QueryStatus.LOADING
        await observer.wait()
        assert fetcher.calls == 2

    async def test_related_keys_match_hierarchically(self, client, make_fetcher) -> None:
        """Test that related keys invalidate their children."""
        fetcher = make_fetcher()
        detail = client.query(["todos", 1], fetcher, stale_time="1h")
        await detail.wait()

        await client.mutate(lambda v: v, None, related_keys=[TODOS])
        await detail.wait()

        assert fetcher.calls == 2

    async def test_invalidation_can_be_disabled(self, client, make_fetcher) -> None:
        """Test that invalidate_related=False skips invalidation."""
        fetcher = make_fetcher(["a"])
        observer = client.query(TODOS, fetcher, stale_time="1h")
        await observer.wait()

        await client.mutate(
            lambda v: v, "b", related_keys=[TODOS], invalidate_related=False
        )

        assert client.is_fetching() == 0
        assert fetcher.calls == 1

    async def test_raising_success_hook_still_invalidates(
        self, client, make_fetcher
    ) -> None:
        """Test that an on_success error does not leave the optimistic value."""
        fetcher = make_fetcher(["a", "b"])
        observer = client.query(TODOS, fetcher, stale_time="1h")
        await observer.wait()

        def on_success(result, variables):
            raise RuntimeError("hook failed")

        with pytest.raises(RuntimeError, match="hook failed"):
            await client.mutate(
                lambda v: v,
                "b",
                related_keys=[TODOS],
                optimistic_update=lambda todos, item: [*todos, item, "pending"],
                on_success=on_success,
            )

        await observer.wait()
        assert fetcher.calls == 2
        assert observer.data == ["a", "b"]

    async def test_success_hooks_order(self, client) -> None:
        """Test that on_success runs before on_settled."""
        events = []

        async def on_success(result, variables):
            events.append(("success", result, variables))

        def on_settled(result, error, variables):
            events.append(("settled", result, error, variables))

        result = await client.mutate(
            lambda v: v * 2,
            21,
            MutationOptions(on_success=on_success, on_settled=on_settled),
        )

        assert result == 42
        assert events == [("success", 42, 21), ("settled", 42, None, 21)]

    async def test_error_hooks_order(self, client) -> None:
        """Test that on_error runs before on_settled."""
        events = []
        error = ValueError("rejected")

        async def fail(variables):
            raise error

        def on_error(exc, variables):
            events.append(("error", exc, variables))

        async def on_settled(result, exc, variables):
            events.append(("settled", result, exc, variables))

        with pytest.raises(MutationError):
            await client.mutate(
                fail,
                "x",
                on_error=on_error,
                on_settled=on_settled,
                on_success=lambda *args: events.append("unexpected"),
            )

        assert events == [("error", error, "x"), ("settled", None, error, "x")]

    async def test_is_mutating(self, client) -> None:
        """Test that pending mutations are counted."""
        gate = asyncio.Event()

        async def slow(variables):
            await gate.wait()
            return variables

        task = asyncio.create_task(client.mutate(slow, 1))
        await asyncio.sleep(0)
        assert client.is_mutating() == 1

        gate.set()
        assert await task == 1
        assert client.is_mutating() == 0

    async def test_cancelled_mutation_rolls_back(self, client) -> None:
        """Test that a cancelled mutation rolls back."""
        client.set_query_data(TODOS, ["a"])
        gate = asyncio.Event()

        async def slow(item):
            await gate.wait()

        task = asyncio.create_task(
            client.mutate(slow, "b", related_keys=[TODOS], optimistic_update=append)
        )
        await asyncio.sleep(0)
        assert client.get_query_data(TODOS) == ["a", "b"]

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert client.get_query_data(TODOS) == ["a"]
        assert client.is_mutating() == 0
