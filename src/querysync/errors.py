"""Exception hierarchy for querysync."""

from __future__ import annotations

from typing import Any


class QuerySyncError(Exception):
    """Base exception for all querysync errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(QuerySyncError, ValueError):
    """Options or client configuration failed validation."""


class FetchError(QuerySyncError):
    """A fetcher failed.

    Fetchers may raise any exception; these classes let a fetcher state
    whether a retry has a chance of succeeding.
    """

    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Retryable failure, e.g. a timeout or a 5xx response."""

    retryable = True


class FatalFetchError(FetchError):
    """Non-retryable failure, e.g. a 4xx response."""

    retryable = False


class QueryCancelledError(QuerySyncError):
    """The fetch for a query was aborted before it settled."""


class MutationError(QuerySyncError):
    """A mutation function failed. The original exception is the ``__cause__``."""

    def __init__(
        self,
        message: str,
        *,
        variables: Any = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.variables = variables


__all__ = [
    "ConfigurationError",
    "FatalFetchError",
    "FetchError",
    "MutationError",
    "QueryCancelledError",
    "QuerySyncError",
    "TransientFetchError",
]
