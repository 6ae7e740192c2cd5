"""QueryClient - the public entry point.

A client owns one cache store together with its fetch, observer, mutation
and garbage-collection machinery. There is no module-level default client:
construct one and pass it to whatever needs it. Several clients can live in
one process without sharing anything.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any

from querysync.duration import parse_optional_duration
from querysync.errors import ConfigurationError, QueryCancelledError
from querysync.fetcher import FetchCoordinator
from querysync.gc import GarbageCollector
from querysync.keys import canonicalize, is_key_prefix, to_predicate
from querysync.mutation import MutationCoordinator, MutationFn
from querysync.observers import ObserverRegistry, QueryObserver
from querysync.options import MutationOptions, QueryOptions
from querysync.store import CacheStore
from querysync.types import (
    Clock,
    Duration,
    Fetcher,
    KeyPredicate,
    OnChange,
    QueryEntry,
    QueryKey,
    QueryStatus,
)

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    """Default clock: monotonic milliseconds."""
    return time.monotonic() * 1000


def _match_all(key: QueryKey) -> bool:
    return True


class QueryClient:
    """Client-side query cache.

    Usage:
        client = QueryClient(default_options=QueryOptions(stale_time="30s"))

        observer = client.query(["user", 1], fetch_user, on_change=render)
        entry = await observer.wait()

        await client.mutate(
            update_user,
            {"id": 1, "name": "Ada"},
            MutationOptions(
                related_keys=[["user", 1]],
                optimistic_update=lambda user, v: {**user, **v},
            ),
        )
    """

    def __init__(
        self,
        *,
        default_options: QueryOptions | None = None,
        abort_on_unobserved: bool = True,
        sweep_interval: Duration | None = None,
        clock: Clock | None = None,
    ) -> None:
        if default_options is not None and not isinstance(default_options, QueryOptions):
            raise ConfigurationError(
                "default_options must be a QueryOptions instance, "
                f"got {type(default_options).__name__}"
            )
        try:
            self._sweep_interval_ms = parse_optional_duration(sweep_interval)
        except ValueError as exc:
            raise ConfigurationError(f"sweep_interval: {exc}") from exc
        if self._sweep_interval_ms is not None and self._sweep_interval_ms <= 0:
            raise ConfigurationError("sweep_interval must be > 0 or None")

        self._defaults = default_options or QueryOptions()
        self._clock = clock or monotonic_ms
        self._store = CacheStore(clock=self._clock)
        self._fetcher = FetchCoordinator(self._store)
        self._gc = GarbageCollector(self._store)
        self._registry = ObserverRegistry(
            self._store,
            self._fetcher,
            self._gc,
            abort_on_unobserved=abort_on_unobserved,
        )
        self._mutations = MutationCoordinator(
            self._store,
            self._fetcher,
            self._gc,
            invalidate=self._invalidate_keys,
            gc_time_ms=self._defaults.gc_time_ms,
        )
        self._closed = False

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def default_options(self) -> QueryOptions:
        return self._defaults

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def gc(self) -> GarbageCollector:
        return self._gc

    @property
    def closed(self) -> bool:
        return self._closed

    def _resolve(self, options: QueryOptions | None, overrides: dict[str, Any]) -> QueryOptions:
        resolved = options if options is not None else self._defaults
        if overrides:
            resolved = resolved.merge(**overrides)
        return resolved

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("QueryClient is closed")
        if self._sweep_interval_ms is not None:
            self._gc.start(self._sweep_interval_ms)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
        *,
        on_change: OnChange | None = None,
        **overrides: Any,
    ) -> QueryObserver[Any]:
        """Observe *key*, fetching it according to the options.

        Must be called from a running event loop. Keyword overrides are
        applied on top of *options* (or the client defaults):

            client.query(["todos"], fetch_todos, stale_time="1m")
        """
        self._ensure_open()
        return QueryObserver(
            key=key,
            fetcher=fetcher,
            options=self._resolve(options, overrides),
            store=self._store,
            registry=self._registry,
            coordinator=self._fetcher,
            on_change=on_change,
        )

    async def prefetch(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
        **overrides: Any,
    ) -> QueryEntry[Any]:
        """Warm the cache for *key* without observing it.

        The entry is not evicted while the fetch runs. Its retention window
        starts when the fetch settles, so an entry nobody subscribes to is
        evicted ``gc_time`` later. Fetch errors are recorded on the entry,
        not raised.
        """
        self._ensure_open()
        resolved = self._resolve(options, overrides)
        entry = self._store.get_or_create(key)
        canonical = canonicalize(entry.key)
        with self._gc.hold(canonical):
            try:
                self._fetcher.ensure_fresh(entry.key, fetcher, resolved)
                settled = await self._fetcher.wait(canonical)
            finally:
                self._gc.retain(canonical, resolved.gc_time_ms)
        return settled if settled is not None else QueryEntry(key=entry.key)

    async def fetch_query(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
        **overrides: Any,
    ) -> Any:
        """Return fresh data for *key*, fetching if needed.

        Unlike ``prefetch``, a failed fetch raises its error.
        """
        entry = await self.prefetch(key, fetcher, options, **overrides)
        if entry.status is QueryStatus.SUCCESS:
            return entry.data
        if entry.status is QueryStatus.ERROR and entry.error is not None:
            raise entry.error
        raise QueryCancelledError(f"Fetch for {canonicalize(entry.key)} did not complete")

    def get_query_state(self, key: Any) -> QueryEntry[Any] | None:
        return self._store.get(canonicalize(key))

    def get_query_data(self, key: Any) -> Any:
        entry = self.get_query_state(key)
        return entry.data if entry is not None else None

    def set_query_data(
        self,
        key: Any,
        updater: Any,
        options: QueryOptions | None = None,
    ) -> QueryEntry[Any]:
        """Write data for *key* as if it had just been fetched.

        *updater* is either the new value or a callable receiving the current
        data (None when absent) and returning the new value.
        """
        resolved = self._resolve(options, {})
        entry = self._store.get_or_create(key)
        canonical = canonicalize(entry.key)
        value = updater(entry.data) if callable(updater) else updater
        now = self._store.now()
        status = (
            QueryStatus.LOADING
            if self._fetcher.in_flight(canonical) is not None
            else QueryStatus.SUCCESS
        )
        updated = self._store.set_fields(
            canonical,
            data=value,
            status=status,
            error=None,
            updated_at=now,
            stale_at=now + resolved.stale_time_ms,
        )
        self._gc.retain(canonical, resolved.gc_time_ms)
        return updated

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def _invalidate(
        self, predicate: KeyPredicate, *, evict: bool, refetch: bool
    ) -> tuple[int, list[asyncio.Task[None]]]:
        now = self._store.now()
        matched = self._store.find(predicate)
        tasks: list[asyncio.Task[None]] = []
        for canonical, entry in matched:
            if evict:
                self._fetcher.cancel(canonical, "evicted")
                if entry.observer_count == 0:
                    self._store.remove(canonical)
                    continue
                # Observed entries are reset rather than removed.
                self._store.update(
                    canonical,
                    lambda e: QueryEntry(
                        key=e.key,
                        fetch_version=e.fetch_version,
                        observer_count=e.observer_count,
                    ),
                )
            else:
                self._store.set_fields(canonical, stale_at=now)

            if refetch and self._registry.has_enabled_observer(canonical):
                definition = self._fetcher.definition(canonical)
                if definition is None:
                    continue
                fetcher, options = definition
                task = self._fetcher.ensure_fresh(entry.key, fetcher, options, force=True)
                if task is not None:
                    tasks.append(task)
        logger.debug(
            "Invalidated %d queries (evict=%s), %d refetching",
            len(matched),
            evict,
            len(tasks),
        )
        return len(matched), tasks

    async def invalidate(
        self,
        target: Any,
        *,
        exact: bool = False,
        evict: bool = False,
        refetch: bool = True,
        wait: bool = False,
    ) -> int:
        """Mark matching queries stale and refetch the observed ones.

        *target* is a key predicate or a key prefix; prefixes match
        hierarchically unless ``exact``:

            await client.invalidate(["users"])            # every users query
            await client.invalidate(["users", 1], exact=True)
            await client.invalidate(lambda key: key[0] == "todos")

        With ``evict`` unobserved entries are deleted and observed ones are
        reset to ``idle`` with no data. Refetches run in the background
        unless ``wait``. Returns the number of matched queries.
        """
        count, tasks = self._invalidate(
            to_predicate(target, exact=exact), evict=evict, refetch=refetch
        )
        if wait and tasks:
            await asyncio.wait(tasks)
        return count

    def _invalidate_keys(self, keys: list[QueryKey]) -> int:
        def predicate(key: QueryKey) -> bool:
            return any(is_key_prefix(prefix, key) for prefix in keys)

        count, _ = self._invalidate(predicate, evict=False, refetch=True)
        return count

    async def refetch(
        self,
        target: Any = None,
        *,
        exact: bool = False,
        supersede: bool = False,
    ) -> int:
        """Force-refetch matching queries that have a known fetcher and wait.

        Returns the number of fetches awaited.
        """
        predicate = _match_all if target is None else to_predicate(target, exact=exact)
        canonicals = []
        for canonical, entry in self._store.find(predicate):
            definition = self._fetcher.definition(canonical)
            if definition is None:
                continue
            fetcher, options = definition
            self._fetcher.ensure_fresh(
                entry.key, fetcher, options, force=True, supersede=supersede
            )
            canonicals.append(canonical)
        for canonical in canonicals:
            await self._fetcher.wait(canonical)
        return len(canonicals)

    def cancel(self, target: Any = None, *, exact: bool = False) -> int:
        """Abort in-flight fetches for matching queries."""
        predicate = _match_all if target is None else to_predicate(target, exact=exact)
        return self._fetcher.cancel_matching(predicate)

    def remove(self, target: Any, *, exact: bool = False) -> int:
        """Evict matching queries without refetching them."""
        count, _ = self._invalidate(
            to_predicate(target, exact=exact), evict=True, refetch=False
        )
        return count

    def clear(self) -> None:
        """Evict every unobserved query and reset the observed ones."""
        self._invalidate(_match_all, evict=True, refetch=False)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def mutate(
        self,
        mutation_fn: MutationFn,
        variables: Any = None,
        options: MutationOptions | None = None,
        **overrides: Any,
    ) -> Any:
        """Run a mutation; see :class:`MutationOptions` for the hooks.

        Raises ``MutationError`` (chained to the original exception) after
        any optimistic update has been rolled back.
        """
        self._ensure_open()
        if overrides:
            options = replace(options or MutationOptions(), **overrides)
        return await self._mutations.mutate(mutation_fn, variables, options)

    # -------------------------------------------------------------------------
    # Introspection and lifecycle
    # -------------------------------------------------------------------------

    def is_fetching(self, target: Any = None, *, exact: bool = False) -> int:
        predicate = None if target is None else to_predicate(target, exact=exact)
        return self._fetcher.is_fetching(predicate)

    def is_mutating(self) -> int:
        return self._mutations.is_mutating()

    def observer_count(self, key: Any) -> int:
        entry = self.get_query_state(key)
        return entry.observer_count if entry is not None else 0

    def keys(self) -> list[QueryKey]:
        return [
            entry.key
            for canonical in self._store
            if (entry := self._store.get(canonical)) is not None
        ]

    async def close(self) -> None:
        """Stop polling, GC timers and in-flight fetches."""
        if self._closed:
            return
        self._closed = True
        await self._registry.close()
        await self._gc.close()
        await self._fetcher.close()

    async def __aenter__(self) -> QueryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"QueryClient(queries={len(self._store)}, fetching={self.is_fetching()})"


__all__ = ["QueryClient", "monotonic_ms"]
