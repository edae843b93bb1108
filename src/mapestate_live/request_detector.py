"""
Classify outbound requests into offline-proxy routes.

Each intercepted request is checked against a fixed priority of rules; the
first matching rule decides which caching strategy handles it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

import httpx

from .env import parse_list_env

DEFAULT_API_PATTERNS = (
    r"/api/properties",
    r"/api/favorites",
)

DEFAULT_STATIC_EXTENSIONS = re.compile(
    r"\.(js|css|png|jpg|jpeg|gif|svg|webp|ico|woff|woff2|ttf|eot)$", re.IGNORECASE
)

DEFAULT_TRUSTED_HOSTS = frozenset(
    {
        "fonts.googleapis.com",
        "fonts.gstatic.com",
        "unpkg.com",
        "cdnjs.cloudflare.com",
    }
)


class Route(str, Enum):
    BYPASS = "bypass"
    API = "api"
    STATIC = "static"
    NAVIGATION = "navigation"
    NETWORK = "network"


@dataclass
class RoutingRules:
    """Patterns used to pick a route for a request."""

    api_patterns: tuple[re.Pattern[str], ...] = field(
        default_factory=lambda: tuple(re.compile(p) for p in DEFAULT_API_PATTERNS)
    )
    static_extensions: re.Pattern[str] = DEFAULT_STATIC_EXTENSIONS
    trusted_hosts: frozenset[str] = DEFAULT_TRUSTED_HOSTS

    @classmethod
    def from_patterns(
        cls,
        api_patterns: list[str] | None = None,
        trusted_hosts: list[str] | None = None,
    ) -> RoutingRules:
        rules = cls()
        if api_patterns:
            rules.api_patterns = tuple(re.compile(p) for p in api_patterns)
        if trusted_hosts:
            rules.trusted_hosts = frozenset(h.lower() for h in trusted_hosts)
        return rules

    @classmethod
    def from_env(cls) -> RoutingRules:
        """Read MAPESTATE_API_PATTERNS and MAPESTATE_TRUSTED_HOSTS, if set."""
        return cls.from_patterns(
            api_patterns=parse_list_env("MAPESTATE_API_PATTERNS"),
            trusted_hosts=parse_list_env("MAPESTATE_TRUSTED_HOSTS"),
        )


def _accepts(request: httpx.Request, media_type: str) -> bool:
    return media_type in request.headers.get("accept", "")


def is_event_stream_request(request: httpx.Request) -> bool:
    """Check if a request opens a server-sent event stream."""
    if _accepts(request, "text/event-stream"):
        return True
    path = request.url.path
    return "/stream" in path or path.endswith("/events")


def is_api_request(request: httpx.Request, rules: RoutingRules) -> bool:
    """Check if a request targets a cacheable API endpoint."""
    path = request.url.path
    return any(pattern.search(path) for pattern in rules.api_patterns)


def is_static_asset(request: httpx.Request, rules: RoutingRules) -> bool:
    """Check if a request is for a static asset or a trusted CDN host."""
    if rules.static_extensions.search(request.url.path):
        return True
    return request.url.host.lower() in rules.trusted_hosts


def is_navigation_request(request: httpx.Request) -> bool:
    """Check if a request is a page navigation."""
    if request.headers.get("sec-fetch-mode", "").lower() == "navigate":
        return True
    return request.method == "GET" and _accepts(request, "text/html")


def detect_route(request: httpx.Request, rules: RoutingRules | None = None) -> Route:
    """
    Pick the route for a request.

    Args:
        request: The outbound request.
        rules: Routing patterns. Defaults to the MapEstate API and CDN set.

    Returns:
        The Route whose strategy should serve the request.
    """
    rules = rules or RoutingRules()

    if request.method != "GET":
        return Route.BYPASS
    if request.url.scheme not in ("http", "https"):
        return Route.BYPASS
    # Long-lived streams must never be buffered into a cache.
    if is_event_stream_request(request):
        return Route.BYPASS

    if is_api_request(request, rules):
        return Route.API
    if is_static_asset(request, rules):
        return Route.STATIC
    if is_navigation_request(request):
        return Route.NAVIGATION
    return Route.NETWORK
