"""Cache store: canonical key -> QueryEntry.

The store is the only shared mutable state in a client. It is mutated through
``update`` and ``remove`` only, both of which complete within a single event
loop turn, so entries need no locking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import replace
from typing import Any

from querysync.keys import as_query_key, canonicalize
from querysync.types import CanonicalKey, Clock, KeyPredicate, QueryEntry

logger = logging.getLogger(__name__)

EntryListener = Callable[[CanonicalKey, QueryEntry[Any]], None]
Transform = Callable[[QueryEntry[Any]], QueryEntry[Any]]


class CacheStore:
    """In-memory map of query entries with change and removal listeners."""

    def __init__(self, *, clock: Clock) -> None:
        self._entries: dict[CanonicalKey, QueryEntry[Any]] = {}
        self._clock = clock
        self._change_listeners: list[EntryListener] = []
        self._remove_listeners: list[EntryListener] = []

    def now(self) -> float:
        return self._clock()

    def on_change(self, listener: EntryListener) -> None:
        """Register a listener called after every state-changing update."""
        self._change_listeners.append(listener)

    def on_remove(self, listener: EntryListener) -> None:
        """Register a listener called after an entry is deleted."""
        self._remove_listeners.append(listener)

    def get(self, canonical: CanonicalKey) -> QueryEntry[Any] | None:
        return self._entries.get(canonical)

    def get_or_create(self, key: Any) -> QueryEntry[Any]:
        """Return the entry for *key*, creating an idle one if missing."""
        parts = as_query_key(key)
        canonical = canonicalize(parts)
        entry = self._entries.get(canonical)
        if entry is None:
            entry = QueryEntry(key=parts)
            self._entries[canonical] = entry
            logger.debug("Created query entry %s", canonical)
        return entry

    def update(self, canonical: CanonicalKey, transform: Transform) -> QueryEntry[Any]:
        """Apply *transform* to an entry and store the result.

        Listeners are notified only when the transform produced a different
        state, so repeated no-op updates stay silent.
        """
        current = self._entries.get(canonical)
        if current is None:
            raise KeyError(canonical)
        updated = transform(current)
        self._entries[canonical] = updated
        if updated is not current and not updated.same_state(current):
            for listener in list(self._change_listeners):
                listener(canonical, updated)
        return updated

    def set_fields(self, canonical: CanonicalKey, **changes: Any) -> QueryEntry[Any]:
        """Shorthand for ``update`` with ``dataclasses.replace``."""
        return self.update(canonical, lambda entry: replace(entry, **changes))

    def remove(self, canonical: CanonicalKey) -> QueryEntry[Any] | None:
        entry = self._entries.pop(canonical, None)
        if entry is not None:
            logger.debug("Removed query entry %s", canonical)
            for listener in list(self._remove_listeners):
                listener(canonical, entry)
        return entry

    def find(self, predicate: KeyPredicate) -> list[tuple[CanonicalKey, QueryEntry[Any]]]:
        """Return ``(canonical, entry)`` pairs whose key matches *predicate*."""
        return [
            (canonical, entry)
            for canonical, entry in list(self._entries.items())
            if predicate(entry.key)
        ]

    def mark_stale(
        self, predicate: KeyPredicate
    ) -> list[tuple[CanonicalKey, QueryEntry[Any]]]:
        """Set ``stale_at = now`` on every matching entry."""
        now = self.now()
        marked = []
        for canonical, _ in self.find(predicate):
            marked.append((canonical, self.set_fields(canonical, stale_at=now)))
        return marked

    def clear(self) -> None:
        for canonical in list(self._entries):
            self.remove(canonical)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, canonical: object) -> bool:
        return canonical in self._entries

    def __iter__(self) -> Iterator[CanonicalKey]:
        return iter(list(self._entries))


__all__ = ["CacheStore", "EntryListener", "Transform"]
