"""Mutation coordinator with optimistic updates and rollback."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from querysync.errors import MutationError
from querysync.fetcher import FetchCoordinator
from querysync.gc import GarbageCollector
from querysync.keys import as_query_key, canonicalize
from querysync.options import MutationOptions
from querysync.store import CacheStore
from querysync.types import MutationEntry, MutationStatus, QueryKey

logger = logging.getLogger(__name__)

MutationFn = Callable[[Any], Any]
InvalidateKeys = Callable[[list[QueryKey]], Any]


async def _call_hook(hook: Callable[..., Any] | None, *args: Any) -> None:
    if hook is None:
        return
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class MutationCoordinator:
    """Runs mutation functions against the cache.

    Mutations are neither deduplicated nor retried; callers serialize
    dependent mutations themselves.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: FetchCoordinator,
        gc: GarbageCollector,
        *,
        invalidate: InvalidateKeys,
        gc_time_ms: float,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._gc = gc
        self._invalidate = invalidate
        self._gc_time_ms = gc_time_ms
        self._pending: dict[int, MutationEntry[Any]] = {}
        self._ids = itertools.count(1)

    async def mutate(
        self,
        mutation_fn: MutationFn,
        variables: Any = None,
        options: MutationOptions | None = None,
    ) -> Any:
        """Run *mutation_fn(variables)* and reconcile the cache with the outcome.

        On failure the optimistic values are rolled back before
        ``MutationError`` is raised, chained to the original exception.
        """
        options = options or MutationOptions()
        mutation: MutationEntry[Any] = MutationEntry(
            variables=variables,
            related_keys=[as_query_key(k) for k in options.related_keys],
        )
        mutation_id = next(self._ids)
        self._pending[mutation_id] = mutation
        try:
            return await self._execute(mutation, mutation_fn, options)
        finally:
            del self._pending[mutation_id]

    async def _execute(
        self,
        mutation: MutationEntry[Any],
        mutation_fn: MutationFn,
        options: MutationOptions,
    ) -> Any:
        variables = mutation.variables
        mutation.status = MutationStatus.PENDING

        if options.optimistic_update is not None:
            try:
                self._apply_optimistic(mutation, options)
            except Exception as exc:
                self._rollback(mutation)
                mutation.status = MutationStatus.ERROR
                mutation.error = exc
                raise MutationError(
                    f"Optimistic update failed: {exc!r}", variables=variables
                ) from exc

        try:
            result = mutation_fn(variables)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            self._rollback(mutation)
            raise
        except Exception as exc:
            mutation.status = MutationStatus.ERROR
            mutation.error = exc
            self._rollback(mutation)
            logger.debug("Mutation failed and was rolled back: %r", exc)
            await _call_hook(options.on_error, exc, variables)
            await _call_hook(options.on_settled, None, exc, variables)
            raise MutationError(
                f"Mutation failed: {exc!r}", variables=variables
            ) from exc

        mutation.status = MutationStatus.SUCCESS
        mutation.result = result
        try:
            await _call_hook(options.on_success, result, variables)
        finally:
            # Optimistic values must be replaced by a refetch even if the hook fails
            if options.invalidate_related and mutation.related_keys:
                await _maybe_await(self._invalidate(mutation.related_keys))
        await _call_hook(options.on_settled, result, None, variables)
        return result

    def _apply_optimistic(
        self, mutation: MutationEntry[Any], options: MutationOptions
    ) -> None:
        assert options.optimistic_update is not None
        for key in mutation.related_keys:
            entry = self._store.get_or_create(key)
            canonical = canonicalize(entry.key)
            self._gc.retain(canonical, self._gc_time_ms)
            if options.cancel_in_flight:
                self._fetcher.cancel(canonical, "optimistic update")
                entry = self._store.get(canonical) or entry
            predicted = options.optimistic_update(entry.data, mutation.variables)
            mutation.optimistic_snapshot[canonical] = entry
            mutation.optimistic_values[canonical] = predicted
            self._store.set_fields(canonical, data=predicted)

        mutation.rollback = lambda: self._rollback(mutation)

    def _rollback(self, mutation: MutationEntry[Any]) -> None:
        """Restore pre-mutation data where the optimistic value is still in place.

        Keys that received newer data in the meantime (e.g. from a refetch)
        keep it.
        """
        for canonical, snapshot in mutation.optimistic_snapshot.items():
            entry = self._store.get(canonical)
            if entry is None:
                continue
            if entry.data is not mutation.optimistic_values.get(canonical):
                continue
            self._store.update(canonical, lambda e, s=snapshot: replace(e, data=s.data))
        mutation.optimistic_snapshot.clear()
        mutation.optimistic_values.clear()

    def is_mutating(self) -> int:
        """Number of mutations currently running."""
        return len(self._pending)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


__all__ = ["MutationCoordinator", "MutationFn"]
