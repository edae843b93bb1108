"""
MapEstate property API client.

Reads go through the shared QueryClient so that the live-update client can
invalidate and refetch them. The underlying httpx client is normally built on
a ProxyTransport, which puts every request behind the offline proxy.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .query_cache import QueryClient, QueryKey, normalize_filters

logger = logging.getLogger(__name__)

ALL_PROPERTIES: QueryKey = ("/api/properties",)
FEATURED_PROPERTIES: QueryKey = ("/api/properties/featured",)

LIST_STALE_TIME_SECONDS = 60
FEATURED_STALE_TIME_SECONDS = 2 * 60
PROPERTY_STALE_TIME_SECONDS = 5 * 60

MAX_RETRIES = 2

NETWORK_ERROR_MESSAGE = "Network error. Please check your internet connection and try again"

_STATUS_MESSAGES = {
    401: "Please log in to continue",
    403: "You do not have permission to perform this action",
    404: "The requested resource was not found",
    500: "Server error. Please try again later",
    503: "Service temporarily unavailable. Please try again later",
}


class ApiError(RuntimeError):
    """Raised when a MapEstate API call fails. ``status`` is 0 for network errors."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.code = "network_error" if status == 0 else "http_error"
        self.message = message


def properties_key(filters: dict[str, Any] | None = None) -> QueryKey:
    return (*ALL_PROPERTIES, normalize_filters(filters))


def property_key(property_id: Any) -> QueryKey:
    return (*ALL_PROPERTIES, str(property_id))


def build_query_url(key: QueryKey) -> tuple[str, dict[str, Any]]:
    """Join a query key into a path; a dict element becomes the query string."""
    parts: list[str] = []
    params: dict[str, Any] = {}
    for part in key:
        if isinstance(part, dict):
            params.update(normalize_filters(part))
        else:
            parts.append(str(part))
    return "/".join(parts), params


def should_retry(failure_count: int, error: Exception) -> bool:
    """Retry network errors and 5xx up to MAX_RETRIES; never retry 4xx."""
    if isinstance(error, ApiError) and 400 <= error.status < 500:
        return False
    return failure_count <= MAX_RETRIES


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or response.reason_phrase)
    except ValueError:
        pass
    return response.text or response.reason_phrase


def raise_for_api_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    status = response.status_code
    detail = _error_message(response)
    if status == 400:
        raise ApiError(status, f"Bad request: {detail}")
    raise ApiError(status, _STATUS_MESSAGES.get(status) or detail or "An unexpected error occurred")


class PropertyApi:
    """Cached readers for the property endpoints."""

    def __init__(self, client: httpx.AsyncClient, query_client: QueryClient):
        self._client = client
        self._query_client = query_client

    @property
    def query_client(self) -> QueryClient:
        return self._query_client

    async def query_fn(self, key: QueryKey) -> Any:
        path, params = build_query_url(key)
        try:
            response = await self._client.get(path, params=params or None)
        except httpx.TransportError as exc:
            raise ApiError(0, NETWORK_ERROR_MESSAGE) from exc
        raise_for_api_status(response)
        return response.json()

    async def list_properties(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return await self._query_client.fetch_query(
            properties_key(filters), self.query_fn, stale_time=LIST_STALE_TIME_SECONDS
        )

    async def list_featured(self) -> list[dict[str, Any]]:
        return await self._query_client.fetch_query(
            FEATURED_PROPERTIES, self.query_fn, stale_time=FEATURED_STALE_TIME_SECONDS
        )

    async def get_property(self, property_id: str) -> dict[str, Any]:
        return await self._query_client.fetch_query(
            property_key(property_id), self.query_fn, stale_time=PROPERTY_STALE_TIME_SECONDS
        )
