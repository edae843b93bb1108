"""
Offline/cache proxy for MapEstate HTTP traffic.

Intercepts outbound GET requests, routes them through one of four caching
strategies, and manages a single versioned cache namespace with an
install/activate lifecycle. Caching is always best-effort: a cache failure
never stops a network response from reaching the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import httpx

from .cache_storage import Cache, CachedResponse, CacheKey, CacheStorage
from .env import env_float, parse_list_env
from .request_detector import Route, RoutingRules, detect_route

logger = logging.getLogger(__name__)

DEFAULT_ORIGIN = "http://localhost:5000"
DEFAULT_CACHE_VERSION = "v1"
CACHE_NAME_PREFIX = "mapestate"
API_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_OFFLINE_PAGE = "/offline.html"

DEFAULT_PRECACHE_URLS = [
    "/",
    "/properties",
    "/favorites",
    "/manifest.json",
    "https://fonts.googleapis.com/css2?family=Inter:wght@300;400;500;600;700&display=swap",
    "https://unpkg.com/leaflet@1.9.4/dist/leaflet.css",
    "https://cdnjs.cloudflare.com/ajax/libs/font-awesome/6.4.0/css/all.min.css",
]

NETWORK_ERRORS = (httpx.TransportError,)


class WorkerState(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


def offline_api_response() -> httpx.Response:
    return httpx.Response(503, json={"error": "Network unavailable", "offline": True})


def offline_page_response() -> httpx.Response:
    return httpx.Response(503, text="Offline")


def not_found_response() -> httpx.Response:
    return httpx.Response(404, content=b"")


class OfflineCacheProxy:
    """Routes requests through cache strategies over an injected network transport."""

    def __init__(
        self,
        network: httpx.AsyncBaseTransport | None = None,
        storage: CacheStorage | None = None,
        origin: str | None = None,
        version: str | None = None,
        precache_urls: list[str] | None = None,
        offline_page: str | None = None,
        api_cache_ttl_seconds: float | None = None,
        rules: RoutingRules | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._network = network or httpx.AsyncHTTPTransport(retries=0)
        self._storage = storage or CacheStorage()
        self._origin = httpx.URL(origin or os.getenv("MAPESTATE_ORIGIN", DEFAULT_ORIGIN))
        self._version = version or os.getenv("MAPESTATE_CACHE_VERSION", DEFAULT_CACHE_VERSION)
        self._precache_urls = (
            precache_urls
            if precache_urls is not None
            else parse_list_env("MAPESTATE_PRECACHE_URLS") or list(DEFAULT_PRECACHE_URLS)
        )
        self._offline_page = offline_page or os.getenv("MAPESTATE_OFFLINE_PAGE", DEFAULT_OFFLINE_PAGE)
        self._api_cache_ttl = (
            api_cache_ttl_seconds
            if api_cache_ttl_seconds is not None
            else env_float("MAPESTATE_API_CACHE_TTL_SECONDS", API_CACHE_TTL_SECONDS)
        )
        self._rules = rules or RoutingRules.from_env()
        self._clock = clock

        self._state = WorkerState.PARSED
        self._skip_waiting = False
        self._controlling = False
        self._background: set[asyncio.Task[None]] = set()

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._served_from_cache = 0
        self._offline_responses = 0

    @property
    def cache_name(self) -> str:
        return f"{CACHE_NAME_PREFIX}-{self._version}"

    @property
    def origin(self) -> str:
        return str(self._origin)

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def offline_page_key(self) -> CacheKey:
        return CacheKey(self._absolute(self._offline_page))

    def _absolute(self, url: str) -> str:
        return str(self._origin.join(url))

    def _record_failure(self, request: httpx.Request, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.info("Network failed for %s (%s)", request.url, exc.__class__.__name__)

    # -- cache access, never raising -------------------------------------

    async def _open_cache(self) -> Cache:
        return await self._storage.open(self.cache_name)

    async def _safe_match(self, key: CacheKey) -> CachedResponse | None:
        try:
            cache = await self._open_cache()
            return await cache.match(key)
        except Exception as exc:
            logger.warning("Cache lookup failed for %s: %s", key.url, exc)
            return None

    async def _safe_put(self, key: CacheKey, response: CachedResponse) -> None:
        try:
            cache = await self._open_cache()
            await cache.put(key, response)
        except Exception as exc:
            logger.warning("Cache write failed for %s: %s", key.url, exc)

    async def _safe_delete(self, key: CacheKey) -> None:
        try:
            cache = await self._open_cache()
            await cache.delete(key)
        except Exception as exc:
            logger.warning("Cache delete failed for %s: %s", key.url, exc)

    async def _fetch_snapshot(self, request: httpx.Request) -> CachedResponse:
        response = await self._network.handle_async_request(request)
        return await CachedResponse.from_response(response)

    # -- lifecycle --------------------------------------------------------

    async def _precache(self, cache: Cache, url: str) -> bool:
        absolute = self._absolute(url)
        try:
            snapshot = await self._fetch_snapshot(httpx.Request("GET", absolute))
        except NETWORK_ERRORS as exc:
            logger.debug("Precache fetch failed for %s: %s", absolute, exc)
            return False
        if not snapshot.is_ok:
            logger.debug("Precache fetch for %s returned %s", absolute, snapshot.status_code)
            return False
        await cache.put(CacheKey(absolute), snapshot)
        return True

    async def install(self) -> None:
        """Open the current cache and pre-populate the app shell."""
        logger.info("Installing offline proxy %s", self.cache_name)
        self._state = WorkerState.INSTALLING
        try:
            cache = await self._open_cache()

            if await self._precache(cache, self._offline_page):
                logger.info("Offline fallback page cached")
            else:
                logger.warning("Failed to cache offline page %s", self._offline_page)

            for url in self._precache_urls:
                if url == self._offline_page:
                    continue
                if not await self._precache(cache, url):
                    logger.warning("Failed to cache resource %s", url)
        except Exception as exc:
            logger.error("Failed to cache static resources: %s", exc)

        self._state = WorkerState.INSTALLED
        self.skip_waiting()

    async def activate(self) -> None:
        """Delete caches from other versions and take control."""
        logger.info("Activating offline proxy %s", self.cache_name)
        self._state = WorkerState.ACTIVATING
        try:
            for name in await self._storage.keys():
                if name != self.cache_name:
                    logger.info("Deleting old cache %s", name)
                    await self._storage.delete(name)
        except Exception as exc:
            logger.warning("Old cache cleanup failed: %s", exc)
        self._controlling = True
        self._state = WorkerState.ACTIVATED

    def skip_waiting(self) -> None:
        self._skip_waiting = True

    async def start(self) -> None:
        await self.install()
        if self._skip_waiting:
            await self.activate()

    async def handle_message(self, message: dict[str, Any] | None) -> bool:
        """Handle a control message. Returns True if it was understood."""
        if not message or message.get("type") != "SKIP_WAITING":
            return False
        self.skip_waiting()
        if self._state is WorkerState.INSTALLED:
            await self.activate()
        return True

    async def clear_caches(self) -> list[str]:
        """Delete every cache namespace, including the current one."""
        deleted: list[str] = []
        for name in await self._storage.keys():
            if await self._storage.delete(name):
                logger.info("Deleted cache %s", name)
                deleted.append(name)
        return deleted

    # -- request handling -------------------------------------------------

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        if self._state is not WorkerState.ACTIVATED:
            return await self._network.handle_async_request(request)

        route = detect_route(request, self._rules)
        if route is Route.BYPASS:
            logger.debug("Bypassing %s %s", request.method, request.url)
            return await self._network.handle_async_request(request)
        if route is Route.API:
            return await self.handle_api_request(request)
        if route is Route.STATIC:
            return await self.handle_static_asset(request)
        if route is Route.NAVIGATION:
            return await self.handle_navigation_request(request)
        return await self.handle_network_first(request)

    async def handle_api_request(self, request: httpx.Request) -> httpx.Response:
        """Network first; timestamped cache fallback with a fixed expiry."""
        key = CacheKey.for_request(request)
        try:
            snapshot = await self._fetch_snapshot(request)
        except NETWORK_ERRORS as exc:
            self._record_failure(request, exc)
            cached = await self._safe_match(key)
            if cached is not None:
                cached_at = cached.cached_at
                if cached_at is not None and self._clock() - cached_at < self._api_cache_ttl:
                    logger.debug("Serving API response from cache: %s", request.url)
                    self._served_from_cache += 1
                    return cached.to_response()
                logger.debug("Evicting expired API response: %s", request.url)
                await self._safe_delete(key)
            self._offline_responses += 1
            return offline_api_response()

        if snapshot.is_ok:
            await self._safe_put(key, snapshot.stamped(self._clock()))
        return snapshot.to_response()

    async def handle_static_asset(self, request: httpx.Request) -> httpx.Response:
        """Cache first with a background refresh of cached copies."""
        key = CacheKey.for_request(request)
        cached = await self._safe_match(key)
        if cached is not None:
            self._served_from_cache += 1
            self._schedule_refresh(request, key)
            return cached.to_response()

        try:
            snapshot = await self._fetch_snapshot(request)
        except NETWORK_ERRORS as exc:
            self._record_failure(request, exc)
            return not_found_response()

        if snapshot.is_ok:
            await self._safe_put(key, snapshot)
        return snapshot.to_response()

    async def handle_navigation_request(self, request: httpx.Request) -> httpx.Response:
        """Network first with the cached page, then the offline page, as fallback."""
        key = CacheKey.for_request(request)
        try:
            snapshot = await self._fetch_snapshot(request)
        except NETWORK_ERRORS as exc:
            self._record_failure(request, exc)
            cached = await self._safe_match(key)
            if cached is not None:
                self._served_from_cache += 1
                return cached.to_response()

            self._offline_responses += 1
            offline = await self._safe_match(self.offline_page_key)
            if offline is not None:
                logger.info("Serving offline fallback page for %s", request.url)
                return offline.to_response()
            return offline_page_response()

        if snapshot.is_ok:
            await self._safe_put(key, snapshot)
        return snapshot.to_response()

    async def handle_network_first(self, request: httpx.Request) -> httpx.Response:
        try:
            return (await self._fetch_snapshot(request)).to_response()
        except NETWORK_ERRORS as exc:
            self._record_failure(request, exc)
            cached = await self._safe_match(CacheKey.for_request(request))
            if cached is not None:
                self._served_from_cache += 1
                return cached.to_response()
            return not_found_response()

    def _schedule_refresh(self, request: httpx.Request, key: CacheKey) -> None:
        task = asyncio.create_task(self._refresh(request, key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, request: httpx.Request, key: CacheKey) -> None:
        try:
            snapshot = await self._fetch_snapshot(request)
        except Exception as exc:
            logger.debug("Background refresh failed for %s: %s", request.url, exc)
            return
        if snapshot.is_ok:
            await self._safe_put(key, snapshot)

    async def flush_background(self) -> None:
        """Wait for in-flight background refreshes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._network.aclose()
        self._controlling = False

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "cacheName": self.cache_name,
            "controlling": self._controlling,
            "skipWaiting": self._skip_waiting,
        }

    def get_health(self) -> dict[str, Any]:
        health = self.get_status()
        health.update(
            {
                "origin": str(self._origin),
                "apiCacheTtlSeconds": self._api_cache_ttl,
                "caches": self._storage.get_health(),
                "backgroundRefreshes": len(self._background),
                "servedFromCache": self._served_from_cache,
                "offlineResponses": self._offline_responses,
                "failureCount": self._failure_count,
                "lastError": self._last_error,
                "lastFailureAt": self._last_failure_at,
            }
        )
        return health


class ProxyTransport(httpx.AsyncBaseTransport):
    """httpx transport that sends every request through an OfflineCacheProxy."""

    def __init__(self, proxy: OfflineCacheProxy):
        self._proxy = proxy

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._proxy.fetch(request)

    async def aclose(self) -> None:
        # The proxy is shared between clients and closed by its owner.
        pass
