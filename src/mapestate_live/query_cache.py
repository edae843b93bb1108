"""
Key-addressed query cache with invalidation and forced refetch.

Query results are stored under tuple keys such as ``("/api/properties",)`` or
``("/api/properties", {"city": "Erbil"})``. Invalidation marks entries stale,
removal evicts them, and refetching re-runs the query function of every
matching entry immediately instead of waiting for the next read.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

QueryKey = tuple[Any, ...]
QueryFn = Callable[[QueryKey], Awaitable[Any]]
RetryPolicy = Callable[[int, Exception], bool]

DEFAULT_STALE_TIME_SECONDS = 5 * 60
DEFAULT_GC_TIME_SECONDS = 10 * 60
MAX_RETRY_DELAY_SECONDS = 30.0


def normalize_filters(filters: dict[str, Any] | None) -> dict[str, Any]:
    """Drop empty values and sort keys so equal filter sets hash equally."""
    if not filters:
        return {}
    return {
        key: value
        for key, value in sorted(filters.items())
        if value is not None and value != "" and value != []
    }


def hash_query_key(key: QueryKey) -> str:
    return json.dumps(list(key), sort_keys=True, default=str, separators=(",", ":"))


def partial_match_key(candidate: Any, query: Any) -> bool:
    """
    True if ``query`` is a partial match of ``candidate``.

    Sequences match element-wise as a prefix; dicts match when every field of
    the query is present and matching in the candidate.
    """
    if candidate == query:
        return True
    if isinstance(candidate, (list, tuple)) and isinstance(query, (list, tuple)):
        if len(query) > len(candidate):
            return False
        return all(partial_match_key(c, q) for c, q in zip(candidate, query))
    if isinstance(candidate, dict) and isinstance(query, dict):
        return all(k in candidate and partial_match_key(candidate[k], v) for k, v in query.items())
    return False


def no_retry(failure_count: int, error: Exception) -> bool:
    return False


@dataclass
class QueryState:
    """Cached result and bookkeeping for one query key."""

    key: QueryKey
    query_hash: str
    data: Any = None
    status: str = "pending"
    error: str | None = None
    data_updated_at: float | None = None
    last_used_at: float = 0.0
    is_invalidated: bool = False
    stale_time: float = DEFAULT_STALE_TIME_SECONDS
    query_fn: QueryFn | None = field(default=None, repr=False)
    fetch_count: int = 0
    invalidation_count: int = 0


class QueryClient:
    """In-process query cache shared by API readers and the live-update client."""

    def __init__(
        self,
        stale_time: float = DEFAULT_STALE_TIME_SECONDS,
        gc_time: float = DEFAULT_GC_TIME_SECONDS,
        retry: RetryPolicy = no_retry,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._default_stale_time = stale_time
        self._gc_time = gc_time
        self._retry = retry
        self._sleep = sleep
        self._clock = clock
        self._queries: dict[str, QueryState] = {}
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    # -- lookup -----------------------------------------------------------

    def _collect_garbage(self) -> None:
        cutoff = self._clock() - self._gc_time
        for query_hash, state in list(self._queries.items()):
            if state.last_used_at < cutoff and query_hash not in self._in_flight:
                del self._queries[query_hash]

    def _ensure(self, key: QueryKey) -> QueryState:
        self._collect_garbage()
        query_hash = hash_query_key(key)
        state = self._queries.get(query_hash)
        if state is None:
            state = QueryState(
                key=tuple(key),
                query_hash=query_hash,
                stale_time=self._default_stale_time,
            )
            self._queries[query_hash] = state
        state.last_used_at = self._clock()
        return state

    def find_all(self, key: QueryKey | None = None, exact: bool = False) -> list[QueryState]:
        self._collect_garbage()
        if key is None:
            return list(self._queries.values())
        if exact:
            state = self._queries.get(hash_query_key(key))
            return [state] if state is not None else []
        return [s for s in self._queries.values() if partial_match_key(s.key, tuple(key))]

    def get_query_state(self, key: QueryKey) -> QueryState | None:
        return self._queries.get(hash_query_key(key))

    def get_query_data(self, key: QueryKey) -> Any:
        state = self.get_query_state(key)
        return state.data if state is not None else None

    def set_query_data(self, key: QueryKey, data: Any) -> None:
        state = self._ensure(key)
        state.data = data
        state.status = "success"
        state.error = None
        state.data_updated_at = self._clock()
        state.is_invalidated = False

    def is_stale(self, state: QueryState) -> bool:
        if state.is_invalidated or state.data_updated_at is None:
            return True
        return self._clock() - state.data_updated_at >= state.stale_time

    # -- fetching ---------------------------------------------------------

    async def fetch_query(
        self,
        key: QueryKey,
        query_fn: QueryFn | None = None,
        stale_time: float | None = None,
    ) -> Any:
        """Return cached data if fresh, otherwise fetch (deduplicated per key)."""
        state = self._ensure(key)
        if query_fn is not None:
            state.query_fn = query_fn
        if stale_time is not None:
            state.stale_time = stale_time
        if not self.is_stale(state):
            return state.data

        task = self._start_fetch(state)
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                # A newer refetch replaced ours; follow it instead.
                if not task.cancelled():
                    raise
                newer = self._in_flight.get(state.query_hash)
                if newer is not None and newer is not task:
                    task = newer
                    continue
                # The replacement may already have landed and left _in_flight.
                if (
                    self._queries.get(state.query_hash) is state
                    and state.status == "success"
                    and not state.is_invalidated
                ):
                    return state.data
                raise LookupError(f"query {state.key!r} was removed while fetching") from None

    def _start_fetch(self, state: QueryState, cancel_in_flight: bool = False) -> asyncio.Task[Any]:
        existing = self._in_flight.get(state.query_hash)
        if existing is not None and not existing.done():
            if not cancel_in_flight:
                return existing
            existing.cancel()

        task = asyncio.create_task(self._run_fetch(state))
        self._in_flight[state.query_hash] = task

        def _done(t: asyncio.Task[Any], query_hash: str = state.query_hash) -> None:
            if self._in_flight.get(query_hash) is t:
                del self._in_flight[query_hash]
            if not t.cancelled() and t.exception() is not None:
                logger.debug("Query %s failed: %s", query_hash, t.exception())

        task.add_done_callback(_done)
        return task

    async def _run_fetch(self, state: QueryState) -> Any:
        if state.query_fn is None:
            raise LookupError(f"no query function registered for {state.key!r}")

        failure_count = 0
        while True:
            state.fetch_count += 1
            try:
                data = await state.query_fn(state.key)
                break
            except Exception as exc:
                failure_count += 1
                if not self._retry(failure_count, exc):
                    state.status = "error"
                    state.error = f"{exc.__class__.__name__}: {exc}"
                    raise
                delay = min(2 ** (failure_count - 1), MAX_RETRY_DELAY_SECONDS)
                logger.debug("Retrying %s in %ss after %s", state.key, delay, exc)
                await self._sleep(delay)

        # Results for evicted queries are dropped.
        if self._queries.get(state.query_hash) is state:
            state.data = data
            state.status = "success"
            state.error = None
            state.data_updated_at = self._clock()
            state.is_invalidated = False
        return data

    # -- invalidation -----------------------------------------------------

    def invalidate_queries(self, key: QueryKey | None = None, exact: bool = False) -> int:
        matched = self.find_all(key, exact=exact)
        for state in matched:
            state.is_invalidated = True
            state.invalidation_count += 1
        return len(matched)

    def remove_queries(self, key: QueryKey | None = None, exact: bool = False) -> int:
        matched = self.find_all(key, exact=exact)
        for state in matched:
            self._queries.pop(state.query_hash, None)
            task = self._in_flight.pop(state.query_hash, None)
            if task is not None:
                task.cancel()
        return len(matched)

    def refetch_queries(
        self, key: QueryKey | None = None, exact: bool = False
    ) -> list[asyncio.Task[Any]]:
        """Schedule an immediate refetch of every matching query that can be fetched."""
        tasks = [
            self._start_fetch(state, cancel_in_flight=True)
            for state in self.find_all(key, exact=exact)
            if state.query_fn is not None
        ]
        logger.debug("Refetching %d queries for %s", len(tasks), key)
        return tasks

    def clear(self) -> None:
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
        self._queries.clear()

    def get_health(self) -> dict[str, Any]:
        states = list(self._queries.values())
        return {
            "queries": len(states),
            "fetching": len(self._in_flight),
            "invalidated": sum(1 for s in states if s.is_invalidated),
            "errors": sum(1 for s in states if s.status == "error"),
            "defaultStaleTimeSeconds": self._default_stale_time,
            "gcTimeSeconds": self._gc_time,
        }
