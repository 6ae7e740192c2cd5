"""Retry policy for fetchers.

Backoff is a plain ``(attempt) -> delay_ms`` function so it can be tested in
isolation and swapped per query. Retry decisions use the error taxonomy in
:mod:`querysync.errors` rather than message matching.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass, field

from querysync.duration import parse_duration
from querysync.errors import ConfigurationError, FetchError, QueryCancelledError
from querysync.types import Duration

BackoffFn = Callable[[int], float]
RetryPredicate = Callable[[BaseException], bool]


def exponential_backoff(
    base_delay_ms: float = 1000,
    *,
    max_delay_ms: float = 30_000,
    jitter: float = 0.1,
    rng: Callable[[], float] = random.random,
) -> BackoffFn:
    """Return ``attempt -> min(base * 2**attempt, max) + jitter`` in ms.

    ``attempt`` is 0 for the first retry. Jitter adds up to ``jitter`` times
    the capped delay, drawn from *rng*.
    """

    def delay(attempt: int) -> float:
        capped = min(max_delay_ms, base_delay_ms * (2 ** max(0, attempt)))
        if capped <= 0:
            return 0.0
        if jitter <= 0:
            return capped
        return capped + capped * jitter * rng()

    return delay


def should_retry_fetch(exc: BaseException) -> bool:
    """Return True when a fetch failure may succeed on another attempt.

    - Cancellation and aborts are never retried.
    - ``FetchError`` subclasses declare it through ``retryable``.
    - Anything else is treated as transient.
    """
    if isinstance(exc, (asyncio.CancelledError, QueryCancelledError)):
        return False
    if isinstance(exc, FetchError):
        return exc.retryable
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and jitter."""

    max_retries: int = 3
    base_delay: Duration = 1000
    max_delay: Duration = "30s"
    jitter: float = 0.1
    backoff: BackoffFn | None = field(default=None, compare=False)
    should_retry: RetryPredicate = field(default=should_retry_fetch, compare=False)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("RetryPolicy.max_retries must be >= 0")
        if self.jitter < 0:
            raise ConfigurationError("RetryPolicy.jitter must be >= 0")
        try:
            base = parse_duration(self.base_delay)
            cap = parse_duration(self.max_delay)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        object.__setattr__(self, "base_delay", base)
        object.__setattr__(self, "max_delay", cap)

    @classmethod
    def none(cls) -> RetryPolicy:
        """Policy that never retries."""
        return cls(max_retries=0)

    def delay_for(self, attempt: int) -> float:
        """Delay in ms before retry number ``attempt`` (0-based)."""
        if self.backoff is not None:
            return max(0.0, self.backoff(attempt))
        return exponential_backoff(
            float(self.base_delay),  # type: ignore[arg-type]
            max_delay_ms=float(self.max_delay),  # type: ignore[arg-type]
            jitter=self.jitter,
        )(attempt)

    def allows(self, exc: BaseException, attempt: int) -> bool:
        """Check if retry number ``attempt`` (0-based) should run after *exc*."""
        return attempt < self.max_retries and self.should_retry(exc)


__all__ = [
    "BackoffFn",
    "RetryPolicy",
    "RetryPredicate",
    "exponential_backoff",
    "should_retry_fetch",
]
