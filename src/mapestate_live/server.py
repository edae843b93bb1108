"""
MCP server exposing live-updated MapEstate property reads.

Property reads are answered from the shared query cache, which the live event
stream keeps fresh. All HTTP traffic, including the stream itself, goes
through the offline proxy so reads keep working from cache when the backend is
unreachable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from mcp.server.fastmcp import FastMCP

from .api import ALL_PROPERTIES, FEATURED_PROPERTIES, PropertyApi, should_retry
from .offline_proxy import OfflineCacheProxy, ProxyTransport
from .property_events import HttpxEventStream, PropertyEventsClient
from .query_cache import QueryClient, normalize_filters

logger = logging.getLogger(__name__)

_proxy: OfflineCacheProxy | None = None
_query_client: QueryClient | None = None
_http: httpx.AsyncClient | None = None
_api: PropertyApi | None = None
_events: PropertyEventsClient | None = None


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Install the offline proxy, then open the live property stream."""
    try:
        await get_proxy().start()
    except Exception as exc:
        logger.warning("Offline proxy start failed, continuing uncached: %s", exc)

    get_events().open()
    try:
        yield
    finally:
        await _shutdown()


mcp = FastMCP(
    "MapEstate Live",
    instructions=(
        "MapEstate property reads backed by a live-updated cache. "
        "Listings are refreshed automatically when the backend announces "
        "created, updated or deleted properties, and are served from the "
        "offline cache when the backend is unreachable."
    ),
    lifespan=_lifespan,
)


def get_proxy() -> OfflineCacheProxy:
    global _proxy
    if _proxy is None:
        _proxy = OfflineCacheProxy()
    return _proxy


def get_query_client() -> QueryClient:
    global _query_client
    if _query_client is None:
        _query_client = QueryClient(retry=should_retry)
    return _query_client


def get_http_client() -> httpx.AsyncClient:
    global _http
    if _http is None:
        proxy = get_proxy()
        _http = httpx.AsyncClient(
            base_url=proxy.origin,
            transport=ProxyTransport(proxy),
        )
    return _http


def get_api() -> PropertyApi:
    global _api
    if _api is None:
        _api = PropertyApi(get_http_client(), get_query_client())
    return _api


def get_events() -> PropertyEventsClient:
    global _events
    if _events is None:
        _events = PropertyEventsClient(get_query_client(), HttpxEventStream(get_http_client()))
    return _events


async def _shutdown() -> None:
    global _proxy, _query_client, _http, _api, _events
    if _events is not None:
        await _events.close()
    if _query_client is not None:
        _query_client.clear()
    if _http is not None:
        await _http.aclose()
    if _proxy is not None:
        await _proxy.aclose()
    _proxy = _query_client = _http = _api = _events = None


@mcp.tool()
async def list_properties(
    type: str | None = None,
    listingType: str | None = None,
    minPrice: float | None = None,
    maxPrice: float | None = None,
    bedrooms: int | None = None,
    bathrooms: int | None = None,
    city: str | None = None,
    country: str | None = None,
    language: str | None = None,
    features: list[str] | None = None,
    search: str | None = None,
    sortBy: str | None = None,
    sortOrder: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> dict[str, Any]:
    """List properties matching the given filters.

    The filter set becomes the live stream's current filters, so later
    create/update/delete events refresh this exact listing.

    Args:
        type: Property type (e.g. "house", "apartment", "villa", "land").
        listingType: "sale" or "rent".
        minPrice: Minimum price.
        maxPrice: Maximum price.
        bedrooms: Minimum bedroom count.
        bathrooms: Minimum bathroom count.
        city: City name (e.g. "Erbil").
        country: Country name.
        language: Listing language - "en", "ar" or "kur".
        features: Required features.
        search: Free-text search.
        sortBy: "price", "date" or "views".
        sortOrder: "asc" or "desc".
        limit: Max listings to return.
        offset: Listings to skip.

    Returns:
        dict with "properties" (list of property dicts) and "totalCount".
    """
    filters = normalize_filters(
        {
            "type": type,
            "listingType": listingType,
            "minPrice": minPrice,
            "maxPrice": maxPrice,
            "bedrooms": bedrooms,
            "bathrooms": bathrooms,
            "city": city,
            "country": country,
            "language": language,
            "features": features,
            "search": search,
            "sortBy": sortBy,
            "sortOrder": sortOrder,
            "limit": limit,
            "offset": offset,
        }
    )
    get_events().update_subscription(current_filters=filters)
    properties = await get_api().list_properties(filters)
    return {"properties": properties, "totalCount": len(properties)}


@mcp.tool()
async def get_property(id: str) -> dict[str, Any]:
    """Retrieve a single property by id.

    Args:
        id: Property identifier.
    """
    return await get_api().get_property(id)


@mcp.tool()
async def list_featured_properties() -> list[dict[str, Any]]:
    """Retrieve the featured properties shown on the home page."""
    return await get_api().list_featured()


@mcp.tool()
def set_live_filters(filters: dict[str, Any] | None = None) -> dict[str, Any]:
    """Set the filter set whose listing is refreshed on live events.

    Changing filters never reconnects the stream. Pass None to stop tracking
    a filtered listing.
    """
    events = get_events()
    events.update_subscription(
        current_filters=normalize_filters(filters) if filters is not None else None
    )
    return events.status()


@mcp.tool()
def get_live_status() -> dict[str, Any]:
    """Return live stream status: isConnected, isConnecting, reconnect attempts and errors."""
    return get_events().status()


@mcp.tool()
async def refresh_properties() -> dict[str, Any]:
    """Invalidate and refetch every cached property listing."""
    query_client = get_query_client()
    query_client.invalidate_queries(ALL_PROPERTIES)
    query_client.invalidate_queries(FEATURED_PROPERTIES)
    tasks = query_client.refetch_queries(ALL_PROPERTIES) + query_client.refetch_queries(
        FEATURED_PROPERTIES
    )
    failed = 0
    for result in await asyncio.gather(*tasks, return_exceptions=True):
        if isinstance(result, BaseException):
            failed += 1
            logger.warning("Refetch failed during refresh: %r", result)
    health = query_client.get_health()
    health.update({"refetched": len(tasks), "failed": failed})
    return health


@mcp.tool()
async def skip_waiting() -> dict[str, Any]:
    """Activate an installed offline proxy version immediately."""
    proxy = get_proxy()
    await proxy.handle_message({"type": "SKIP_WAITING"})
    return proxy.get_status()


@mcp.tool()
async def clear_offline_cache() -> dict[str, Any]:
    """Delete every offline cache namespace."""
    deleted = await get_proxy().clear_caches()
    return {"deleted": deleted}


@mcp.tool()
def get_cache_health() -> dict[str, Any]:
    """Return offline proxy, query cache and live stream health."""
    return {
        "proxy": get_proxy().get_health(),
        "queries": get_query_client().get_health(),
        "live": get_events().status(),
    }


def main() -> None:
    mcp.run()
