"""querysync - client-side query cache and synchronization engine."""

import logging
from contextlib import suppress

# Client API
from querysync.client import QueryClient

# Duration parsing
from querysync.duration import parse_duration

# Errors
from querysync.errors import (
    ConfigurationError,
    FatalFetchError,
    FetchError,
    MutationError,
    QueryCancelledError,
    QuerySyncError,
    TransientFetchError,
)

# Key codec
from querysync.keys import canonicalize, is_key_prefix, key_hash, key_matcher
from querysync.observers import QueryObserver
from querysync.options import MutationOptions, QueryOptions
from querysync.retry import RetryPolicy, exponential_backoff

# Core types
from querysync.types import (
    AbortSignal,
    Duration,
    MutationStatus,
    QueryEntry,
    QueryKey,
    QueryStatus,
)

# Optional httpx integration - only available when httpx is installed
with suppress(ImportError):
    from querysync.http import http_fetcher

# Library-level NullHandler: stay silent unless the application configures logging.
logging.getLogger("querysync").addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "AbortSignal",
    "ConfigurationError",
    "Duration",
    "FatalFetchError",
    "FetchError",
    "MutationError",
    "MutationOptions",
    "MutationStatus",
    "QueryCancelledError",
    "QueryClient",
    "QueryEntry",
    "QueryKey",
    "QueryObserver",
    "QueryOptions",
    "QueryStatus",
    "QuerySyncError",
    "RetryPolicy",
    "TransientFetchError",
    "canonicalize",
    "exponential_backoff",
    "http_fetcher",
    "is_key_prefix",
    "key_hash",
    "key_matcher",
    "parse_duration",
]
