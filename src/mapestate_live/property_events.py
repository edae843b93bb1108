"""
Live property updates over a server-sent event stream.

Keeps a single long-lived connection to the property stream, maps each
mutation event onto query-cache invalidations plus a forced refetch, and
reconnects with capped exponential backoff when the transport drops. Once the
reconnect budget is spent the client gives up quietly; only closing and
reopening it starts a new connection.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Protocol

import httpx
from httpx_sse import aconnect_sse

from .api import ALL_PROPERTIES, FEATURED_PROPERTIES, properties_key, property_key
from .env import env_float, env_int
from .query_cache import QueryClient

logger = logging.getLogger(__name__)

DEFAULT_STREAM_PATH = "/api/properties/stream"
DEFAULT_RECONNECT_BASE_SECONDS = 1.0
DEFAULT_RECONNECT_MAX_SECONDS = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10


class StreamError(RuntimeError):
    """Raised when the event stream cannot be opened or ends."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"
    TORN_DOWN = "torn_down"


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: str
    id: str | None = None


class EventStreamSource(Protocol):
    def connect(self) -> Any:
        """Async context manager yielding an async iterator of StreamEvent."""


class HttpxEventStream:
    """Event stream source speaking text/event-stream over an httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str | None = None,
        read_timeout_seconds: float | None = None,
    ):
        self._client = client
        self._path = path or os.getenv("MAPESTATE_STREAM_PATH", DEFAULT_STREAM_PATH)
        self._read_timeout = (
            read_timeout_seconds
            if read_timeout_seconds is not None
            else env_float("MAPESTATE_STREAM_READ_TIMEOUT_SECONDS", 300.0)
        )

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        timeout = httpx.Timeout(30.0, read=self._read_timeout)
        async with aconnect_sse(self._client, "GET", self._path, timeout=timeout) as source:
            response = source.response
            if response.status_code != 200:
                raise StreamError(
                    "bad_status", f"event stream returned HTTP {response.status_code}"
                )

            async def _events() -> AsyncIterator[StreamEvent]:
                async for sse in source.aiter_sse():
                    yield StreamEvent(event=sse.event, data=sse.data, id=sse.id or None)

            yield _events()


@dataclass
class ReconnectPolicy:
    """Capped exponential backoff: ``min(base * 2**attempt, max_delay)``."""

    base_delay: float = DEFAULT_RECONNECT_BASE_SECONDS
    max_delay: float = DEFAULT_RECONNECT_MAX_SECONDS
    max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS

    @classmethod
    def from_env(cls) -> ReconnectPolicy:
        return cls(
            base_delay=env_float("MAPESTATE_RECONNECT_BASE_SECONDS", DEFAULT_RECONNECT_BASE_SECONDS),
            max_delay=env_float("MAPESTATE_RECONNECT_MAX_SECONDS", DEFAULT_RECONNECT_MAX_SECONDS),
            max_attempts=env_int("MAPESTATE_RECONNECT_MAX_ATTEMPTS", DEFAULT_MAX_RECONNECT_ATTEMPTS),
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)


@dataclass
class PropertyEventSubscription:
    """Latest filters and callbacks, read by the event handlers on every event."""

    current_filters: dict[str, Any] | None = None
    on_property_created: Callable[[dict[str, Any]], Any] | None = None
    on_property_updated: Callable[[dict[str, Any]], Any] | None = None
    on_property_deleted: Callable[[str], Any] | None = None

    def update(self, **changes: Any) -> None:
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"unknown subscription fields: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(self, name, value)


class PropertyEventsClient:
    """Owns the property event stream and its reconnect loop."""

    def __init__(
        self,
        query_client: QueryClient,
        source: EventStreamSource,
        policy: ReconnectPolicy | None = None,
        subscription: PropertyEventSubscription | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._query_client = query_client
        self._source = source
        self._policy = policy or ReconnectPolicy.from_env()
        self._subscription = subscription or PropertyEventSubscription()
        self._sleep = sleep
        self._clock = clock

        self._state = ConnectionState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        self._reconnect_attempts = 0

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_connected_at: float | None = None
        self._events_handled = 0
        self._malformed_events = 0

        self._handlers: dict[str, Callable[[Any], None]] = {
            "connected": self._handle_connected,
            "heartbeat": self._handle_heartbeat,
            "property_created": self._handle_property_created,
            "property_updated": self._handle_property_updated,
            "property_deleted": self._handle_property_deleted,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscription(self) -> PropertyEventSubscription:
        return self._subscription

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def update_subscription(self, **changes: Any) -> None:
        """Change filters or callbacks in place; the connection is left alone."""
        self._subscription.update(**changes)

    # -- connection lifecycle --------------------------------------------

    def open(self) -> None:
        """Start the stream. A no-op while a connection loop is already running."""
        if self._task is not None and not self._task.done():
            return
        self._reconnect_attempts = 0
        self._state = ConnectionState.CONNECTING
        self._task = asyncio.create_task(self._run(), name="mapestate-property-events")

    async def close(self) -> None:
        """Tear down the stream, cancelling any scheduled reconnect. Idempotent."""
        task = self._task
        self._task = None
        pending = list(self._pending)
        self._pending.clear()

        for t in (task, *pending):
            if t is not None and not t.done():
                t.cancel()
        await asyncio.gather(*(t for t in (task, *pending) if t is not None), return_exceptions=True)

        if self._state is not ConnectionState.TORN_DOWN:
            logger.info("Closing property event stream")
        self._state = ConnectionState.TORN_DOWN

    async def _run(self) -> None:
        while True:
            self._state = ConnectionState.CONNECTING
            try:
                async with self._source.connect() as events:
                    self._on_open()
                    async for event in events:
                        self.handle_event(event.event, event.data)
                error: Exception = StreamError("stream_ended", "event stream closed by server")
            except Exception as exc:
                error = exc
            self._on_transport_error(error)

            if self._reconnect_attempts >= self._policy.max_attempts:
                self._state = ConnectionState.GIVEN_UP
                logger.warning(
                    "Property event stream gave up after %d reconnect attempts",
                    self._reconnect_attempts,
                )
                return

            delay = self._policy.delay_for(self._reconnect_attempts)
            self._reconnect_attempts += 1
            self._state = ConnectionState.RECONNECTING
            logger.info(
                "Reconnecting property event stream in %.1fs (attempt %d/%d)",
                delay,
                self._reconnect_attempts,
                self._policy.max_attempts,
            )
            await self._sleep(delay)

    def _on_open(self) -> None:
        self._state = ConnectionState.OPEN
        self._reconnect_attempts = 0
        self._last_connected_at = self._clock()
        logger.info("Property event stream connected")

    def _on_transport_error(self, exc: Exception) -> None:
        self._state = ConnectionState.CLOSED
        self._failure_count += 1
        self._last_failure_at = self._clock()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Property event stream error (%s): %s", exc.__class__.__name__, exc)

    # -- event dispatch ---------------------------------------------------

    def handle_event(self, kind: str, data: str) -> bool:
        """
        Dispatch one stream event. Returns True if it was handled.

        Unnamed ``message`` events carry their kind in a ``type`` field. Bad
        payloads and unknown kinds are logged and skipped.
        """
        try:
            payload = json.loads(data) if data else {}
        except ValueError as exc:
            self._malformed_events += 1
            logger.warning("Ignoring malformed %s event: %s (raw=%r)", kind or "message", exc, data)
            return False

        if kind in ("", "message"):
            if not isinstance(payload, dict):
                self._malformed_events += 1
                logger.warning("Ignoring message event without an object payload: %r", data)
                return False
            kind = str(payload.get("type") or "")

        handler = self._handlers.get(kind)
        if handler is None:
            logger.info("Unknown property event type %r", kind)
            return False

        try:
            handler(payload)
        except Exception:
            logger.exception("Error handling %s event", kind)
            return False
        self._events_handled += 1
        return True

    def _handle_connected(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else None
        logger.info("Property event stream says connected: %s", message)

    def _handle_heartbeat(self, payload: Any) -> None:
        logger.debug("Property event stream heartbeat")

    def _invalidate_current_filters(self) -> None:
        filters = self._subscription.current_filters
        if filters is not None:
            self._query_client.invalidate_queries(properties_key(filters))

    def _force_refetch(self) -> None:
        for task in self._query_client.refetch_queries(ALL_PROPERTIES):
            self._track(task)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _emit(self, name: str, arg: Any) -> None:
        callback = getattr(self._subscription, name)
        if callback is None:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))
        except Exception:
            logger.exception("%s callback failed", name)

    def _handle_property_created(self, prop: dict[str, Any]) -> None:
        logger.info("Property created: %s", prop.get("title"))
        self._query_client.invalidate_queries(ALL_PROPERTIES)
        self._invalidate_current_filters()
        self._query_client.invalidate_queries(FEATURED_PROPERTIES)
        self._force_refetch()
        self._emit("on_property_created", prop)

    def _handle_property_updated(self, prop: dict[str, Any]) -> None:
        logger.info("Property updated: %s", prop.get("title"))
        self._query_client.invalidate_queries(ALL_PROPERTIES)
        if prop.get("id") is not None:
            self._query_client.invalidate_queries(property_key(prop["id"]))
        self._invalidate_current_filters()
        self._force_refetch()
        self._emit("on_property_updated", prop)

    def _handle_property_deleted(self, payload: dict[str, Any]) -> None:
        property_id = payload.get("propertyId") or payload.get("id")
        logger.info("Property deleted: %s", payload.get("title") or property_id)
        self._query_client.invalidate_queries(ALL_PROPERTIES)
        if property_id is not None:
            self._query_client.remove_queries(property_key(property_id), exact=True)
        else:
            logger.warning("Delete event without a property id: %r", payload)
        self._invalidate_current_filters()
        self._force_refetch()
        self._emit("on_property_deleted", None if property_id is None else str(property_id))

    def status(self) -> dict[str, Any]:
        return {
            "isConnected": self._state is ConnectionState.OPEN,
            "isConnecting": self._state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING),
            "state": self._state.value,
            "reconnectAttempts": self._reconnect_attempts,
            "maxReconnectAttempts": self._policy.max_attempts,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastConnectedAt": self._last_connected_at,
            "eventsHandled": self._events_handled,
            "malformedEvents": self._malformed_events,
            "currentFilters": self._subscription.current_filters,
        }
