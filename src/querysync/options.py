"""Query and mutation options.

Every recognized option is enumerated here with its default and validated at
construction. Duration fields accept anything :func:`parse_duration` does and
are stored as milliseconds.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal

from querysync.duration import parse_duration, parse_optional_duration
from querysync.errors import ConfigurationError
from querysync.retry import RetryPolicy
from querysync.types import Duration

RefetchOnMount = bool | Literal["always"]

DEFAULT_GC_TIME = "5m"


def _ms(name: str, value: Duration) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name}: {exc}") from exc


@dataclass(frozen=True)
class QueryOptions:
    """Per-query options.

    Attributes:
        stale_time: How long fetched data counts as fresh. ``0`` means every
            mount or invalidation refetches.
        gc_time: How long an unobserved entry is retained before eviction.
        refetch_on_mount: ``True`` and ``False`` fetch on subscribe when the
            data is missing or stale, ``"always"`` refetches even fresh data.
        refetch_interval: Poll interval while the query is observed, or None.
        enabled: Disabled observers never trigger fetches.
        retry: Retry policy for failed fetches.
    """

    stale_time: Duration = 0
    gc_time: Duration = DEFAULT_GC_TIME
    refetch_on_mount: RefetchOnMount = True
    refetch_interval: Duration | None = None
    enabled: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stale_time", _ms("stale_time", self.stale_time))
        object.__setattr__(self, "gc_time", _ms("gc_time", self.gc_time))
        try:
            interval = parse_optional_duration(self.refetch_interval)
        except ValueError as exc:
            raise ConfigurationError(f"refetch_interval: {exc}") from exc
        if interval is not None and interval <= 0:
            raise ConfigurationError("refetch_interval must be > 0 or None")
        object.__setattr__(self, "refetch_interval", interval)

        if self.refetch_on_mount not in (True, False, "always"):
            raise ConfigurationError(
                "refetch_on_mount must be True, False or 'always', "
                f"got {self.refetch_on_mount!r}"
            )
        if not isinstance(self.retry, RetryPolicy):
            raise ConfigurationError(
                f"retry must be a RetryPolicy, got {type(self.retry).__name__}"
            )

    @property
    def stale_time_ms(self) -> float:
        return float(self.stale_time)  # type: ignore[arg-type]

    @property
    def gc_time_ms(self) -> float:
        return float(self.gc_time)  # type: ignore[arg-type]

    @property
    def refetch_interval_ms(self) -> float | None:
        if self.refetch_interval is None:
            return None
        return float(self.refetch_interval)  # type: ignore[arg-type]

    def merge(self, **overrides: Any) -> QueryOptions:
        """Return a copy with *overrides* applied.

        Unknown option names raise ``ConfigurationError`` instead of being
        silently ignored.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown query option(s): {', '.join(sorted(unknown))}"
            )
        return replace(self, **overrides)


# Sync or async callback
MutationHook = Callable[..., Any]


@dataclass(frozen=True)
class MutationOptions:
    """Options for a single ``mutate`` call.

    Attributes:
        related_keys: Queries affected by the mutation. They receive the
            optimistic value, are rolled back on failure and are invalidated
            on success.
        optimistic_update: ``(current_data, variables) -> predicted_data``,
            applied to each related key before the mutation runs.
        on_success: ``(result, variables)``, sync or async.
        on_error: ``(error, variables)``, sync or async, after rollback.
        on_settled: ``(result, error, variables)``, always last.
        invalidate_related: Invalidate ``related_keys`` after ``on_success``.
        cancel_in_flight: Abort related fetches before the optimistic update
            so an older response cannot overwrite the predicted value.
    """

    related_keys: Sequence[Any] = ()
    optimistic_update: Callable[[Any, Any], Any] | None = None
    on_success: MutationHook | None = None
    on_error: MutationHook | None = None
    on_settled: MutationHook | None = None
    invalidate_related: bool = True
    cancel_in_flight: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.related_keys, (str, bytes)):
            raise ConfigurationError(
                "related_keys must be a sequence of keys, not a single string"
            )
        object.__setattr__(self, "related_keys", tuple(self.related_keys))


__all__ = ["DEFAULT_GC_TIME", "MutationOptions", "QueryOptions", "RefetchOnMount"]
