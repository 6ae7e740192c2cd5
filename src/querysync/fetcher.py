"""Fetch coordinator: deduplicated, versioned, retried fetches.

Only one fetch runs per canonical key at a time. Each fetch carries the
entry's ``fetch_version`` at start; its result is applied only if that
version is still current when it settles, so a superseded fetch can never
overwrite newer data.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any

from querysync.errors import FatalFetchError
from querysync.keys import canonicalize
from querysync.options import QueryOptions
from querysync.store import CacheStore
from querysync.types import (
    AbortSignal,
    CanonicalKey,
    Fetcher,
    KeyPredicate,
    QueryEntry,
    QueryKey,
    QueryStatus,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _InFlight:
    version: int
    task: asyncio.Task[None]
    signal: AbortSignal
    settled_status: QueryStatus  # status to restore if the fetch is cancelled


def _settled_status(entry: QueryEntry[Any]) -> QueryStatus:
    if entry.status is not QueryStatus.LOADING:
        return entry.status
    if entry.error is not None:
        return QueryStatus.ERROR
    return QueryStatus.SUCCESS if entry.has_data else QueryStatus.IDLE


class FetchCoordinator:
    """Runs caller-supplied fetchers against a :class:`CacheStore`."""

    def __init__(self, store: CacheStore) -> None:
        self._store = store
        self._in_flight: dict[CanonicalKey, _InFlight] = {}
        self._definitions: dict[CanonicalKey, tuple[Fetcher, QueryOptions]] = {}
        store.on_remove(self._forget)

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    def remember(
        self, canonical: CanonicalKey, fetcher: Fetcher, options: QueryOptions
    ) -> None:
        """Record the latest fetcher/options used for a key.

        Invalidation and polling refetch with whatever was registered last.
        """
        self._definitions[canonical] = (fetcher, options)

    def definition(
        self, canonical: CanonicalKey
    ) -> tuple[Fetcher, QueryOptions] | None:
        return self._definitions.get(canonical)

    def _forget(self, canonical: CanonicalKey, entry: QueryEntry[Any]) -> None:
        self._definitions.pop(canonical, None)
        record = self._in_flight.pop(canonical, None)
        if record is not None:
            self._abort(record, "entry removed")

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def ensure_fresh(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions,
        *,
        force: bool = False,
        supersede: bool = False,
    ) -> asyncio.Task[None] | None:
        """Start a fetch for *key* unless one is running or data is fresh.

        Returns the in-flight task (new or joined), or None when the cached
        data is fresh and nothing was started. ``force`` ignores freshness;
        ``supersede`` additionally aborts a running fetch and starts a new
        version.
        """
        entry = self._store.get_or_create(key)
        canonical = canonicalize(entry.key)
        self.remember(canonical, fetcher, options)

        current = self._in_flight.get(canonical)
        if current is not None:
            if not supersede:
                logger.debug(
                    "Fetch for %s already in flight (v%d)", canonical, current.version
                )
                return current.task
            logger.debug("Superseding fetch v%d for %s", current.version, canonical)
            del self._in_flight[canonical]
            self._abort(current, "superseded")
        elif not force and entry.has_data and not entry.is_stale(self._store.now()):
            return None

        return self._start(canonical, entry, fetcher, options, current)

    def _start(
        self,
        canonical: CanonicalKey,
        entry: QueryEntry[Any],
        fetcher: Fetcher,
        options: QueryOptions,
        superseded: _InFlight | None,
    ) -> asyncio.Task[None]:
        version = entry.fetch_version + 1
        signal = AbortSignal()
        task = asyncio.get_running_loop().create_task(
            self._run(canonical, entry.key, fetcher, options, version, signal),
            name=f"querysync-fetch:{canonical}",
        )
        settled = (
            superseded.settled_status if superseded is not None else _settled_status(entry)
        )
        record = _InFlight(version, task, signal, settled)
        # Register before notifying so observers that re-enter see the fetch.
        self._in_flight[canonical] = record
        task.add_done_callback(lambda t: self._finished(canonical, record, t))

        logger.debug("Starting fetch v%d for %s", version, canonical)
        self._store.set_fields(
            canonical,
            status=QueryStatus.LOADING,
            fetch_version=version,
            failure_count=0,
        )
        return task

    async def _invoke(
        self, fetcher: Fetcher, key: QueryKey, signal: AbortSignal
    ) -> Any:
        try:
            awaitable = fetcher(key, signal)
        except Exception as exc:
            raise FatalFetchError(
                f"Fetcher raised before returning an awaitable: {exc!r}"
            ) from exc
        if not inspect.isawaitable(awaitable):
            raise FatalFetchError(
                f"Fetcher must return an awaitable, got {type(awaitable).__name__}"
            )
        return await awaitable

    def _is_current(
        self, canonical: CanonicalKey, version: int, signal: AbortSignal
    ) -> bool:
        entry = self._store.get(canonical)
        return (
            entry is not None
            and entry.fetch_version == version
            and not signal.aborted
        )

    async def _run(
        self,
        canonical: CanonicalKey,
        key: QueryKey,
        fetcher: Fetcher,
        options: QueryOptions,
        version: int,
        signal: AbortSignal,
    ) -> None:
        attempt = 0
        while True:
            try:
                result = await self._invoke(fetcher, key, signal)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not self._is_current(canonical, version, signal):
                    logger.debug(
                        "Discarding failure of superseded fetch v%d for %s",
                        version,
                        canonical,
                    )
                    return
                if options.retry.allows(exc, attempt):
                    delay_ms = options.retry.delay_for(attempt)
                    attempt += 1
                    logger.debug(
                        "Fetch v%d for %s failed (%r), retry %d in %.0fms",
                        version,
                        canonical,
                        exc,
                        attempt,
                        delay_ms,
                    )
                    self._store.set_fields(canonical, failure_count=attempt)
                    if delay_ms > 0:
                        await asyncio.sleep(delay_ms / 1000)
                    if not self._is_current(canonical, version, signal):
                        return
                    continue

                logger.debug(
                    "Fetch v%d for %s failed after %d attempt(s): %r",
                    version,
                    canonical,
                    attempt + 1,
                    exc,
                )
                failures = attempt + 1
                self._release(canonical, version)
                self._store.update(
                    canonical,
                    lambda e: replace(
                        e,
                        status=QueryStatus.ERROR,
                        error=exc,
                        failure_count=failures,
                    ),
                )
                return

            if not self._is_current(canonical, version, signal):
                logger.debug(
                    "Discarding result of superseded fetch v%d for %s", version, canonical
                )
                return

            self._release(canonical, version)
            now = self._store.now()
            stale_at = now + options.stale_time_ms
            self._store.update(
                canonical,
                lambda e: replace(
                    e,
                    status=QueryStatus.SUCCESS,
                    data=result,
                    error=None,
                    updated_at=now,
                    stale_at=stale_at,
                    failure_count=0,
                ),
            )
            logger.debug("Fetch v%d for %s succeeded", version, canonical)
            return

    def _release(self, canonical: CanonicalKey, version: int) -> None:
        # Unregister before the terminal update so observers reacting to it
        # see no fetch in flight.
        record = self._in_flight.get(canonical)
        if record is not None and record.version == version:
            del self._in_flight[canonical]

    def _finished(
        self, canonical: CanonicalKey, record: _InFlight, task: asyncio.Task[None]
    ) -> None:
        if self._in_flight.get(canonical) is record:
            del self._in_flight[canonical]
            if task.cancelled():
                # Cancelled from outside the coordinator (e.g. loop shutdown).
                self._restore(canonical, record)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Fetch task for %s crashed",
                canonical,
                exc_info=task.exception(),
            )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def _abort(self, record: _InFlight, reason: str) -> None:
        record.signal.abort(reason)
        record.task.cancel()

    def _restore(self, canonical: CanonicalKey, record: _InFlight) -> None:
        entry = self._store.get(canonical)
        if entry is None or entry.fetch_version != record.version:
            return
        if entry.status is QueryStatus.LOADING:
            self._store.set_fields(canonical, status=record.settled_status)

    def cancel(self, canonical: CanonicalKey, reason: str = "cancelled") -> bool:
        """Abort the in-flight fetch for a key and restore its settled status.

        Returns True if a fetch was running.
        """
        record = self._in_flight.pop(canonical, None)
        if record is None:
            return False
        logger.debug("Cancelling fetch v%d for %s: %s", record.version, canonical, reason)
        self._abort(record, reason)
        self._restore(canonical, record)
        return True

    def cancel_matching(self, predicate: KeyPredicate, reason: str = "cancelled") -> int:
        cancelled = 0
        for canonical, _ in self._store.find(predicate):
            if self.cancel(canonical, reason):
                cancelled += 1
        return cancelled

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def in_flight(self, canonical: CanonicalKey) -> asyncio.Task[None] | None:
        record = self._in_flight.get(canonical)
        return record.task if record is not None else None

    def is_fetching(self, predicate: KeyPredicate | None = None) -> int:
        """Number of running fetches, optionally restricted to matching keys."""
        if predicate is None:
            return len(self._in_flight)
        return sum(
            1
            for canonical in self._in_flight
            if (entry := self._store.get(canonical)) is not None
            and predicate(entry.key)
        )

    async def wait(self, canonical: CanonicalKey) -> QueryEntry[Any] | None:
        """Wait until no fetch is running for a key; never raises fetch errors."""
        while (record := self._in_flight.get(canonical)) is not None:
            await asyncio.wait({record.task})
        return self._store.get(canonical)

    async def close(self) -> None:
        """Abort every in-flight fetch and wait for the tasks to unwind."""
        records = list(self._in_flight.items())
        self._in_flight.clear()
        for canonical, record in records:
            self._abort(record, "client closed")
            self._restore(canonical, record)
        tasks = [record.task for _, record in records]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["FetchCoordinator"]
