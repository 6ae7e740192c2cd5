"""Observer registry and the per-subscriber QueryObserver handle."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from querysync.fetcher import FetchCoordinator
from querysync.gc import GarbageCollector
from querysync.keys import as_query_key, canonicalize
from querysync.options import QueryOptions
from querysync.store import CacheStore
from querysync.types import (
    CanonicalKey,
    Fetcher,
    OnChange,
    QueryEntry,
    QueryKey,
    QueryStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Observer:
    """A registered subscriber for one key."""

    id: int
    key: QueryKey
    on_change: OnChange
    options: QueryOptions
    fetcher: Fetcher | None = None


@dataclass(slots=True)
class _Poller:
    interval_ms: float
    task: asyncio.Task[None]


@dataclass(slots=True)
class _KeyObservers:
    observers: dict[int, Observer] = field(default_factory=dict)
    gc_time_ms: float = 0.0


class ObserverRegistry:
    """Tracks subscribers per key and delivers state transitions to them.

    Notifications for a key are delivered in the order the transitions
    happened, even when a callback triggers a further update: nested
    notifications are queued until the current delivery finishes.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: FetchCoordinator,
        gc: GarbageCollector,
        *,
        abort_on_unobserved: bool = True,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._gc = gc
        self._abort_on_unobserved = abort_on_unobserved
        self._keys: dict[CanonicalKey, _KeyObservers] = {}
        self._last_notified: dict[CanonicalKey, QueryEntry[Any]] = {}
        self._pollers: dict[CanonicalKey, _Poller] = {}
        self._queue: deque[tuple[CanonicalKey, QueryEntry[Any]]] = deque()
        self._delivering = False
        self._ids = itertools.count(1)
        store.on_change(self.notify)
        store.on_remove(self._removed)

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        key: Any,
        on_change: OnChange,
        options: QueryOptions,
        fetcher: Fetcher | None = None,
    ) -> Callable[[], None]:
        """Register *on_change* for *key* and apply the refetch-on-mount policy.

        Returns an idempotent disposer.
        """
        entry = self._store.get_or_create(key)
        canonical = canonicalize(entry.key)
        observer = Observer(next(self._ids), entry.key, on_change, options, fetcher)

        slot = self._keys.setdefault(canonical, _KeyObservers())
        slot.observers[observer.id] = observer
        slot.gc_time_ms = max(slot.gc_time_ms, options.gc_time_ms)

        self._gc.cancel(canonical)
        entry = self._store.set_fields(
            canonical,
            observer_count=entry.observer_count + 1,
            retain_until=None,
        )
        self._last_notified.setdefault(canonical, entry)

        if fetcher is not None:
            self._fetcher.remember(canonical, fetcher, options)
            if options.enabled:
                self._mount(entry, fetcher, options)
        self._sync_polling(canonical)

        disposed = False

        def unsubscribe() -> None:
            nonlocal disposed
            if disposed:
                return
            disposed = True
            self._unsubscribe(canonical, observer)

        return unsubscribe

    def _mount(
        self, entry: QueryEntry[Any], fetcher: Fetcher, options: QueryOptions
    ) -> None:
        # Absent or stale data is always fetched; "always" also refetches fresh data
        force = options.refetch_on_mount == "always"
        self._fetcher.ensure_fresh(entry.key, fetcher, options, force=force)

    def _unsubscribe(self, canonical: CanonicalKey, observer: Observer) -> None:
        slot = self._keys.get(canonical)
        gc_time_ms = observer.options.gc_time_ms
        if slot is not None:
            slot.observers.pop(observer.id, None)
            gc_time_ms = max(gc_time_ms, slot.gc_time_ms)

        entry = self._store.get(canonical)
        if entry is None:
            return
        remaining = max(0, entry.observer_count - 1)
        if remaining > 0:
            self._store.set_fields(canonical, observer_count=remaining)
            self._sync_polling(canonical)
            return

        retain_until = self._store.now() + gc_time_ms
        self._store.set_fields(canonical, observer_count=0, retain_until=retain_until)
        self._stop_polling(canonical)
        self._keys.pop(canonical, None)
        if self._abort_on_unobserved:
            self._fetcher.cancel(canonical, "no observers")
        self._gc.schedule(canonical, retain_until)
        logger.debug(
            "Query %s unobserved, retained for %.0fms", canonical, gc_time_ms
        )

    def observers(self, canonical: CanonicalKey) -> list[Observer]:
        slot = self._keys.get(canonical)
        return list(slot.observers.values()) if slot is not None else []

    def has_enabled_observer(self, canonical: CanonicalKey) -> bool:
        return any(o.options.enabled for o in self.observers(canonical))

    # -------------------------------------------------------------------------
    # Notification
    # -------------------------------------------------------------------------

    def notify(self, canonical: CanonicalKey, entry: QueryEntry[Any]) -> None:
        """Deliver a state transition to every subscriber of a key."""
        self._queue.append((canonical, entry))
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._queue:
                self._deliver(*self._queue.popleft())
        finally:
            self._delivering = False

    def _deliver(self, canonical: CanonicalKey, entry: QueryEntry[Any]) -> None:
        last = self._last_notified.get(canonical)
        if last is not None and last.same_state(entry):
            return
        self._last_notified[canonical] = entry
        for observer in self.observers(canonical):
            try:
                observer.on_change(entry)
            except Exception:
                logger.warning(
                    "Observer callback for %s raised", canonical, exc_info=True
                )

    def _removed(self, canonical: CanonicalKey, entry: QueryEntry[Any]) -> None:
        self._last_notified.pop(canonical, None)
        self._stop_polling(canonical)
        self._keys.pop(canonical, None)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _poll_leader(self, canonical: CanonicalKey) -> Observer | None:
        """The subscribed observer with the shortest poll interval, if any."""
        candidates = [
            o
            for o in self.observers(canonical)
            if o.options.enabled
            and o.fetcher is not None
            and o.options.refetch_interval_ms is not None
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda o: o.options.refetch_interval_ms or 0.0)

    def _sync_polling(self, canonical: CanonicalKey) -> None:
        leader = self._poll_leader(canonical)
        if leader is None:
            self._stop_polling(canonical)
            return
        interval_ms = leader.options.refetch_interval_ms or 0.0
        current = self._pollers.get(canonical)
        if current is not None and current.interval_ms == interval_ms:
            return
        self._stop_polling(canonical)
        task = asyncio.get_running_loop().create_task(
            self._poll(canonical, interval_ms),
            name=f"querysync-poll:{canonical}",
        )
        self._pollers[canonical] = _Poller(interval_ms, task)

    def _stop_polling(self, canonical: CanonicalKey) -> None:
        poller = self._pollers.pop(canonical, None)
        if poller is not None:
            poller.task.cancel()

    async def _poll(self, canonical: CanonicalKey, interval_ms: float) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            entry = self._store.get(canonical)
            if entry is None or entry.observer_count == 0:
                return
            # Resolved per tick so a departed observer's fetcher is never used
            leader = self._poll_leader(canonical)
            if leader is None or leader.fetcher is None:
                return
            logger.debug("Polling %s every %.0fms", canonical, interval_ms)
            self._fetcher.ensure_fresh(
                entry.key, leader.fetcher, leader.options, force=True
            )

    def polling_interval(self, canonical: CanonicalKey) -> float | None:
        poller = self._pollers.get(canonical)
        return poller.interval_ms if poller is not None else None

    async def close(self) -> None:
        pollers = list(self._pollers.values())
        self._pollers.clear()
        for poller in pollers:
            poller.task.cancel()
        if pollers:
            await asyncio.gather(*(p.task for p in pollers), return_exceptions=True)


class QueryObserver(Generic[T]):
    """Handle returned by ``QueryClient.query``.

    Holds one subscription on the key for as long as it is open. Read the
    current snapshot through ``entry``, attach more listeners with
    ``subscribe``, ``await wait()`` for a settled state, and call
    ``unsubscribe`` (or leave the ``with`` block) to release it.
    """

    def __init__(
        self,
        *,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions,
        store: CacheStore,
        registry: ObserverRegistry,
        coordinator: FetchCoordinator,
        on_change: OnChange | None = None,
    ) -> None:
        self._key = as_query_key(key)
        self._canonical = canonicalize(self._key)
        self._fetcher = fetcher
        self._options = options
        self._store = store
        self._coordinator = coordinator
        self._listeners: list[OnChange] = [on_change] if on_change is not None else []
        self._streams: list[asyncio.Queue[QueryEntry[Any] | None]] = []
        self._last: QueryEntry[Any] | None = None
        self._closed = False
        self._dispose = registry.subscribe(self._key, self._handle, options, fetcher)

    def _handle(self, entry: QueryEntry[Any]) -> None:
        self._last = entry
        for stream in self._streams:
            stream.put_nowait(entry)
        for listener in list(self._listeners):
            listener(entry)

    @property
    def key(self) -> QueryKey:
        return self._key

    @property
    def canonical_key(self) -> CanonicalKey:
        return self._canonical

    @property
    def options(self) -> QueryOptions:
        return self._options

    @property
    def entry(self) -> QueryEntry[T]:
        entry = self._store.get(self._canonical)
        if entry is None:
            # Only reachable after unsubscribe and eviction
            return self._last or QueryEntry(key=self._key)
        return entry

    @property
    def data(self) -> T | None:
        return self.entry.data

    @property
    def error(self) -> BaseException | None:
        return self.entry.error

    @property
    def status(self) -> QueryStatus:
        return self.entry.status

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: OnChange) -> Callable[[], None]:
        """Add a listener for this observer's key; returns its remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def refetch(self, *, supersede: bool = False) -> asyncio.Task[None] | None:
        """Force a refetch, joining a running fetch unless *supersede*."""
        return self._coordinator.ensure_fresh(
            self._key, self._fetcher, self._options, force=True, supersede=supersede
        )

    async def wait(self) -> QueryEntry[T]:
        """Wait until no fetch is running and return the current entry.

        Fetch failures are reported through ``entry.status``/``entry.error``,
        never raised.
        """
        await self._coordinator.wait(self._canonical)
        return self.entry

    async def updates(self) -> AsyncIterator[QueryEntry[T]]:
        """Yield every state transition until the observer is closed."""
        stream: asyncio.Queue[QueryEntry[Any] | None] = asyncio.Queue()
        self._streams.append(stream)
        try:
            while not self._closed or not stream.empty():
                entry = await stream.get()
                if entry is None:
                    return
                yield entry
        finally:
            self._streams.remove(stream)

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._dispose()
        for stream in self._streams:
            stream.put_nowait(None)

    def __enter__(self) -> QueryObserver[T]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        state = "closed" if self._closed else self.status.value
        return f"QueryObserver({self._canonical}, {state})"


__all__ = ["Observer", "ObserverRegistry", "QueryObserver"]
