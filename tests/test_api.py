from __future__ import annotations

import asyncio

import httpx
import pytest

from mapestate_live.api import (
    NETWORK_ERROR_MESSAGE,
    ApiError,
    PropertyApi,
    build_query_url,
    properties_key,
    property_key,
    raise_for_api_status,
    should_retry,
)
from mapestate_live.query_cache import QueryClient

ORIGIN = "http://localhost:5000"


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _api(handler, sleep: FakeSleep | None = None) -> PropertyApi:
    client = httpx.AsyncClient(base_url=ORIGIN, transport=httpx.MockTransport(handler))
    return PropertyApi(client, QueryClient(retry=should_retry, sleep=sleep or FakeSleep()))


def test_query_keys():
    assert properties_key({"city": "Erbil", "type": ""}) == ("/api/properties", {"city": "Erbil"})
    assert properties_key(None) == ("/api/properties", {})
    assert property_key(42) == ("/api/properties", "42")


def test_build_query_url():
    assert build_query_url(("/api/properties", "42")) == ("/api/properties/42", {})
    assert build_query_url(("/api/properties", {"city": "Erbil", "bedrooms": None})) == (
        "/api/properties",
        {"city": "Erbil"},
    )
    assert build_query_url(("/api/properties/featured",)) == ("/api/properties/featured", {})


@pytest.mark.parametrize(
    ("status", "body", "message"),
    [
        (400, {"message": "minPrice must be a number"}, "Bad request: minPrice must be a number"),
        (401, {}, "Please log in to continue"),
        (403, {}, "You do not have permission to perform this action"),
        (404, {}, "The requested resource was not found"),
        (500, {}, "Server error. Please try again later"),
        (503, {"error": "Network unavailable", "offline": True}, "Service temporarily unavailable. Please try again later"),
        (418, {"message": "short and stout"}, "short and stout"),
    ],
)
def test_error_messages(status: int, body: dict, message: str):
    with pytest.raises(ApiError) as exc_info:
        raise_for_api_status(httpx.Response(status, json=body))
    assert exc_info.value.status == status
    assert exc_info.value.code == "http_error"
    assert str(exc_info.value) == message


def test_should_retry():
    assert should_retry(1, ApiError(0, NETWORK_ERROR_MESSAGE))
    assert should_retry(2, ApiError(500, "boom"))
    assert not should_retry(3, ApiError(500, "boom"))
    assert not should_retry(1, ApiError(404, "missing"))
    assert not should_retry(1, ApiError(401, "login"))


def test_list_properties_sends_filters_and_caches():
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json=[{"id": "1", "city": "Erbil"}])

    api = _api(handler)

    async def run():
        first = await api.list_properties({"city": "Erbil", "features": []})
        second = await api.list_properties({"city": "Erbil"})
        return first, second

    first, second = asyncio.run(run())

    assert first == second == [{"id": "1", "city": "Erbil"}]
    assert len(seen) == 1
    assert seen[0].path == "/api/properties"
    assert dict(seen[0].params) == {"city": "Erbil"}


def test_get_property_uses_id_path():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/properties/abc"
        return httpx.Response(200, json={"id": "abc"})

    api = _api(handler)
    assert asyncio.run(api.get_property("abc")) == {"id": "abc"}
    assert api.query_client.get_query_data(("/api/properties", "abc")) == {"id": "abc"}


def test_network_errors_are_retried_then_wrapped():
    sleep = FakeSleep()
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        raise httpx.ConnectError("refused", request=request)

    api = _api(handler, sleep)

    with pytest.raises(ApiError) as exc_info:
        asyncio.run(api.list_featured())

    assert exc_info.value.code == "network_error"
    assert str(exc_info.value) == NETWORK_ERROR_MESSAGE
    assert attempts == 3
    assert sleep.delays == [1, 2]


def test_client_errors_are_not_retried():
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(404, json={"message": "gone"})

    api = _api(handler)

    with pytest.raises(ApiError) as exc_info:
        asyncio.run(api.get_property("missing"))

    assert exc_info.value.status == 404
    assert attempts == 1
