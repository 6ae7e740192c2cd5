"""Core types for the querysync engine."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, NewType, TypeVar

from querysync.errors import QueryCancelledError

T = TypeVar("T")

# Canonical key - compile-time branding only
if TYPE_CHECKING:
    CanonicalKey = NewType("CanonicalKey", str)
else:
    CanonicalKey = str

QueryKey = tuple[Any, ...]

# Duration type alias: "30s", "5m", "1m30s", timedelta, or milliseconds
Duration = str | int | float | timedelta

# Millisecond clock
Clock = Callable[[], float]


class QueryStatus(str, Enum):
    """Lifecycle status of a cached query."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MutationStatus(str, Enum):
    """Lifecycle status of a single mutation call."""

    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class QueryEntry(Generic[T]):
    """Immutable snapshot of a cached query.

    Every state transition produces a new instance, so an entry handed to an
    observer never changes underneath it.
    """

    key: QueryKey
    status: QueryStatus = QueryStatus.IDLE
    data: T | None = None
    error: BaseException | None = None
    updated_at: float | None = None  # ms, last successful fetch
    stale_at: float | None = None  # ms, updated_at + stale_time
    fetch_version: int = 0
    failure_count: int = 0
    observer_count: int = 0
    retain_until: float | None = None  # ms, GC deadline once unobserved

    @property
    def has_data(self) -> bool:
        """True once data has been fetched or set at least once."""
        return self.updated_at is not None

    @property
    def is_loading(self) -> bool:
        return self.status is QueryStatus.LOADING

    @property
    def is_settled(self) -> bool:
        return self.status in (QueryStatus.SUCCESS, QueryStatus.ERROR)

    def is_stale(self, now: float) -> bool:
        """Check if the entry is eligible for a background refetch."""
        if self.stale_at is None:
            return True
        return now >= self.stale_at

    def same_state(self, other: QueryEntry[Any]) -> bool:
        """Compare the observable state of two snapshots.

        Bookkeeping fields (observer count, retention, failure count) are
        ignored, and user data is compared by identity so ``__eq__`` on
        arbitrary values is never invoked.
        """
        return (
            self.status is other.status
            and self.data is other.data
            and self.error is other.error
            and self.updated_at == other.updated_at
            and self.stale_at == other.stale_at
            and self.fetch_version == other.fetch_version
        )


class AbortSignal:
    """Cancellation signal handed to every fetch attempt.

    Fetchers that hold resources (open connections, subprocesses) can check
    ``aborted``, ``await signal.wait()`` or register a callback. The engine
    also cancels the fetch task, so fetchers that ignore the signal are still
    interrupted at their next suspension point.
    """

    __slots__ = ("_callbacks", "_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str | None], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)

    def add_callback(self, callback: Callable[[str | None], None]) -> None:
        """Run *callback* on abort (immediately if already aborted)."""
        if self._event.is_set():
            callback(self._reason)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise QueryCancelledError(self._reason or "Query was aborted")

    def __repr__(self) -> str:
        state = f"aborted: {self._reason!r}" if self.aborted else "active"
        return f"AbortSignal({state})"


Fetcher = Callable[[QueryKey, AbortSignal], Awaitable[Any]]
OnChange = Callable[[QueryEntry[Any]], None]
KeyPredicate = Callable[[QueryKey], bool]


@dataclass(slots=True)
class MutationEntry(Generic[T]):
    """Bookkeeping for one in-progress mutation. Not stored in the cache."""

    variables: Any
    related_keys: list[QueryKey] = field(default_factory=list)
    status: MutationStatus = MutationStatus.IDLE
    optimistic_snapshot: dict[CanonicalKey, QueryEntry[Any]] = field(
        default_factory=dict
    )
    optimistic_values: dict[CanonicalKey, Any] = field(default_factory=dict)
    rollback: Callable[[], None] | None = None
    result: T | None = None
    error: BaseException | None = None


__all__ = [
    "AbortSignal",
    "CanonicalKey",
    "Clock",
    "Duration",
    "Fetcher",
    "KeyPredicate",
    "MutationEntry",
    "MutationStatus",
    "OnChange",
    "QueryEntry",
    "QueryKey",
    "QueryStatus",
]
