from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from mapestate_live.cache_storage import CacheStorage
from mapestate_live.offline_proxy import OfflineCacheProxy

ORIGIN = "http://localhost:5000"

_ENV_KEYS = [
    "MAPESTATE_ORIGIN",
    "MAPESTATE_STREAM_PATH",
    "MAPESTATE_STREAM_READ_TIMEOUT_SECONDS",
    "MAPESTATE_CACHE_VERSION",
    "MAPESTATE_API_CACHE_TTL_SECONDS",
    "MAPESTATE_PRECACHE_URLS",
    "MAPESTATE_OFFLINE_PAGE",
    "MAPESTATE_API_PATTERNS",
    "MAPESTATE_TRUSTED_HOSTS",
    "MAPESTATE_RECONNECT_BASE_SECONDS",
    "MAPESTATE_RECONNECT_MAX_SECONDS",
    "MAPESTATE_RECONNECT_MAX_ATTEMPTS",
]


@pytest.fixture(autouse=True)
def _clear_mapestate_env(monkeypatch: pytest.MonkeyPatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeNetwork:
    """Scripted backend keyed by URL path. Raises ConnectError while offline."""

    def __init__(self, routes: dict[str, Callable[[httpx.Request], Any]] | None = None):
        self.routes = routes or {}
        self.offline = False
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []
        self.transport = httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if self.gate is not None:
            await self.gate.wait()
        if self.offline:
            raise httpx.ConnectError("network down", request=request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)


def make_proxy(
    network: FakeNetwork,
    storage: CacheStorage | None = None,
    clock: FakeClock | None = None,
    precache_urls: list[str] | None = None,
    version: str = "v1",
) -> OfflineCacheProxy:
    return OfflineCacheProxy(
        network=network.transport,
        storage=storage or CacheStorage(),
        origin=ORIGIN,
        version=version,
        precache_urls=precache_urls if precache_urls is not None else [],
        clock=clock or FakeClock(),
    )
