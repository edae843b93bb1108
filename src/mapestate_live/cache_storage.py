"""
Versioned response cache used by the offline proxy.

Responses are stored as raw snapshots so they can be replayed to any number of
callers. Namespaces are addressed by name; the proxy keeps exactly one current
namespace and deletes the rest when a new version activates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import NamedTuple

import httpx

logger = logging.getLogger(__name__)

CACHED_AT_HEADER = "x-mapestate-cached-at"

# Framing headers that describe the original connection, not the body.
_HOP_BY_HOP_HEADERS = {"transfer-encoding", "connection", "keep-alive"}


class CacheKey(NamedTuple):
    url: str
    method: str = "GET"

    @classmethod
    def for_request(cls, request: httpx.Request) -> CacheKey:
        return cls(str(request.url), request.method)


@dataclass(frozen=True)
class CachedResponse:
    """Replayable snapshot of an HTTP response."""

    status_code: int
    headers: tuple[tuple[str, str], ...] = ()
    content: bytes = b""
    reason_phrase: bytes | None = None

    @property
    def is_ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def cached_at(self) -> float | None:
        for name, value in self.headers:
            if name.lower() == CACHED_AT_HEADER:
                try:
                    return float(value)
                except ValueError:
                    return None
        return None

    def stamped(self, timestamp: float) -> CachedResponse:
        """Return a copy carrying a capture timestamp header."""
        headers = tuple(
            (name, value) for name, value in self.headers if name.lower() != CACHED_AT_HEADER
        )
        return replace(self, headers=(*headers, (CACHED_AT_HEADER, repr(timestamp))))

    def to_response(self) -> httpx.Response:
        extensions = {}
        if self.reason_phrase:
            extensions["reason_phrase"] = self.reason_phrase
        return httpx.Response(
            self.status_code,
            headers=list(self.headers),
            content=self.content,
            extensions=extensions,
        )

    @classmethod
    async def from_response(cls, response: httpx.Response) -> CachedResponse:
        """
        Drain a response into a snapshot and close it.

        Transport-level responses are read raw so content-encoding is kept
        intact for the client that eventually decodes them.
        """
        drop = set(_HOP_BY_HOP_HEADERS)
        try:
            try:
                content = b"".join([chunk async for chunk in response.aiter_raw()])
            except httpx.StreamConsumed:
                # Pre-read responses only expose the decoded body.
                content = response.content
                drop.update({"content-encoding", "content-length"})
        finally:
            await response.aclose()

        headers = tuple(
            (name, value)
            for name, value in response.headers.multi_items()
            if name.lower() not in drop
        )
        return cls(
            status_code=response.status_code,
            headers=headers,
            content=content,
            reason_phrase=response.extensions.get("reason_phrase"),
        )


@dataclass
class Cache:
    """A single named cache namespace."""

    name: str
    entries: dict[CacheKey, CachedResponse] = field(default_factory=dict)

    async def match(self, key: CacheKey) -> CachedResponse | None:
        return self.entries.get(key)

    async def put(self, key: CacheKey, response: CachedResponse) -> None:
        self.entries[key] = response

    async def delete(self, key: CacheKey) -> bool:
        return self.entries.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self.entries)


class CacheStorage:
    """
    In-memory registry of cache namespaces.

    Methods are coroutines so that disk or network backed stores can be
    dropped in without changing callers.
    """

    def __init__(self) -> None:
        self._caches: dict[str, Cache] = {}

    async def open(self, name: str) -> Cache:
        cache = self._caches.get(name)
        if cache is None:
            cache = Cache(name)
            self._caches[name] = cache
            logger.debug("Created cache namespace %s", name)
        return cache

    async def delete(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None

    async def keys(self) -> list[str]:
        return list(self._caches.keys())

    def get_health(self) -> dict[str, int]:
        return {name: len(cache) for name, cache in self._caches.items()}
