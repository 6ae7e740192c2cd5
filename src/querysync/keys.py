"""Query key canonicalization and matching."""

from __future__ import annotations

import dataclasses
import hashlib
import json
from collections.abc import Mapping, Sequence, Set
from enum import Enum
from typing import Any

from querysync.types import CanonicalKey, KeyPredicate, QueryKey


def as_query_key(parts: Any) -> QueryKey:
    """Normalize user input to a key tuple.

    Lists and tuples become tuples; a bare scalar or mapping becomes a
    one-part key.
    """
    if isinstance(parts, tuple):
        return parts
    if isinstance(parts, list):
        return tuple(parts)
    return (parts,)


def _normalize(part: Any) -> Any:
    """Reduce a key part to plain JSON-compatible values."""
    if part is None or isinstance(part, (bool, int, float, str)):
        return part
    if isinstance(part, Enum):
        return _normalize(part.value)
    if isinstance(part, Mapping):
        # str() keys so mixed int/str keys can still be sorted
        return {str(k): _normalize(v) for k, v in part.items()}
    if dataclasses.is_dataclass(part) and not isinstance(part, type):
        return {
            f.name: _normalize(getattr(part, f.name))
            for f in dataclasses.fields(part)
        }
    if isinstance(part, Set):
        members = [_normalize(p) for p in part]
        return sorted(members, key=_dump)
    if isinstance(part, (bytes, bytearray)):
        return part.hex()
    if isinstance(part, Sequence):
        return [_normalize(p) for p in part]
    return str(part)


def _dump(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=True,
    )


def canonicalize(key: Any) -> CanonicalKey:
    """Serialize a query key to a stable string.

    Mapping parts are written with sorted keys, so ``{"a": 1, "b": 2}`` and
    ``{"b": 2, "a": 1}`` produce the same canonical key.
    """
    return CanonicalKey(_dump([_normalize(p) for p in as_query_key(key)]))


def key_hash(key: Any) -> str:
    """Short, fixed-length digest of a query key."""
    return hashlib.sha256(canonicalize(key).encode()).hexdigest()[:16]


def is_key_prefix(prefix: Any, key: Any) -> bool:
    """Check if *prefix* matches the leading parts of *key*."""
    prefix_parts = as_query_key(prefix)
    key_parts = as_query_key(key)
    if len(prefix_parts) > len(key_parts):
        return False
    return canonicalize(prefix_parts) == canonicalize(key_parts[: len(prefix_parts)])


def key_matcher(prefix: Any, *, exact: bool = False) -> KeyPredicate:
    """Build a key predicate for invalidation.

    By default matching is hierarchical: ``("users",)`` matches
    ``("users", 1)`` and ``("users", 1, "posts")``. With ``exact=True`` only
    the identical key matches.
    """
    prefix_parts = as_query_key(prefix)
    canonical = canonicalize(prefix_parts)

    def matches(key: QueryKey) -> bool:
        if exact:
            return canonicalize(key) == canonical
        return is_key_prefix(prefix_parts, key)

    return matches


def to_predicate(target: Any, *, exact: bool = False) -> KeyPredicate:
    """Accept either a ready predicate or a key prefix."""
    if callable(target):
        return target
    return key_matcher(target, exact=exact)


__all__ = [
    "as_query_key",
    "canonicalize",
    "is_key_prefix",
    "key_hash",
    "key_matcher",
    "to_predicate",
]
