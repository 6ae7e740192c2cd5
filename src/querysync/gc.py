"""Garbage collection of unobserved entries."""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from querysync.store import CacheStore
from querysync.types import CanonicalKey, QueryEntry

logger = logging.getLogger(__name__)


def _is_due(entry: QueryEntry[Any], now: float) -> bool:
    return (
        entry.observer_count == 0
        and entry.retain_until is not None
        and now >= entry.retain_until
    )


class GarbageCollector:
    """Evicts entries with no observers once their retention window passes.

    Each entry that becomes unobserved gets a loop timer for its
    ``retain_until`` deadline. An optional periodic sweep catches anything a
    timer could not be scheduled for (no running loop at the time).

    An entry whose fetch is still running, or that a caller is holding, is
    never evicted. It is put aside and reconsidered once the fetch settles
    or the hold is released.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store
        self._timers: dict[CanonicalKey, asyncio.TimerHandle] = {}
        self._deferred: set[CanonicalKey] = set()
        self._holds: Counter[CanonicalKey] = Counter()
        self._sweeper: asyncio.Task[None] | None = None
        store.on_change(self._changed)
        store.on_remove(lambda canonical, _: self.cancel(canonical))

    def retain(self, canonical: CanonicalKey, gc_time_ms: float) -> None:
        """Start or extend the retention window of an unobserved entry."""
        entry = self._store.get(canonical)
        if entry is None or entry.observer_count > 0:
            return
        retain_until = self._store.now() + gc_time_ms
        if entry.retain_until is not None and entry.retain_until >= retain_until:
            return
        self._store.set_fields(canonical, retain_until=retain_until)
        self.schedule(canonical, retain_until)

    @contextmanager
    def hold(self, canonical: CanonicalKey) -> Iterator[None]:
        """Keep *canonical* from being evicted inside the ``with`` block."""
        self._holds[canonical] += 1
        try:
            yield
        finally:
            self._holds[canonical] -= 1
            if self._holds[canonical] <= 0:
                del self._holds[canonical]
                self._reconsider(canonical)

    def schedule(self, canonical: CanonicalKey, retain_until: float) -> None:
        self.cancel(canonical)
        if math.isinf(retain_until):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        delay_s = max(0.0, retain_until - self._store.now()) / 1000
        self._timers[canonical] = loop.call_later(delay_s, self.collect, canonical)

    def cancel(self, canonical: CanonicalKey) -> None:
        self._deferred.discard(canonical)
        handle = self._timers.pop(canonical, None)
        if handle is not None:
            handle.cancel()

    def _pinned(self, canonical: CanonicalKey, entry: QueryEntry[Any]) -> bool:
        return entry.is_loading or canonical in self._holds

    def collect(self, canonical: CanonicalKey) -> bool:
        """Evict one entry if it is due; reschedule if the timer fired early."""
        self._timers.pop(canonical, None)
        entry = self._store.get(canonical)
        if entry is None or entry.observer_count > 0 or entry.retain_until is None:
            return False
        if self._pinned(canonical, entry):
            self._deferred.add(canonical)
            return False
        if _is_due(entry, self._store.now()):
            self._store.remove(canonical)
            logger.debug("Evicted unobserved query %s", canonical)
            return True
        self.schedule(canonical, entry.retain_until)
        return False

    def sweep(self, now: float | None = None) -> list[CanonicalKey]:
        """Evict every due entry and return the evicted keys."""
        if now is None:
            now = self._store.now()
        evicted = []
        for canonical in self._store:
            entry = self._store.get(canonical)
            if entry is None or not _is_due(entry, now):
                continue
            if self._pinned(canonical, entry):
                self._deferred.add(canonical)
                continue
            self._store.remove(canonical)
            evicted.append(canonical)
        if evicted:
            logger.debug("GC sweep evicted %d queries", len(evicted))
        return evicted

    def _changed(self, canonical: CanonicalKey, entry: QueryEntry[Any]) -> None:
        if canonical in self._deferred and not entry.is_loading:
            self._reconsider(canonical)

    def _reconsider(self, canonical: CanonicalKey) -> None:
        if canonical not in self._deferred:
            return
        entry = self._store.get(canonical)
        if entry is None or self._pinned(canonical, entry):
            return
        self._deferred.discard(canonical)
        if entry.observer_count == 0 and entry.retain_until is not None:
            self.schedule(canonical, entry.retain_until)

    def start(self, interval_ms: float) -> None:
        """Run ``sweep`` every *interval_ms* on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(interval_ms), name="querysync-gc"
        )

    async def _sweep_forever(self, interval_ms: float) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            self.sweep()

    def pending(self) -> int:
        """Number of scheduled eviction timers."""
        return len(self._timers)

    async def close(self) -> None:
        for canonical in list(self._timers):
            self.cancel(canonical)
        self._deferred.clear()
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None


__all__ = ["GarbageCollector"]
