"""Shared httpx.AsyncClient for the Polar REST API, pooled across requests."""

import httpx

from canvas_billing.config import Settings, get_settings
from canvas_billing.constants import HTTP_CONNECT_TIMEOUT, HTTP_TOTAL_TIMEOUT, POLAR_API_URLS

_client: httpx.AsyncClient | None = None


def build_polar_client(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Client bound to the configured Polar server, authenticated with the access token."""
    headers = {"Accept": "application/json"}
    if settings.polar_access_token:
        headers["Authorization"] = f"Bearer {settings.polar_access_token}"
    return httpx.AsyncClient(
        base_url=POLAR_API_URLS[settings.polar_server],
        headers=headers,
        timeout=httpx.Timeout(HTTP_TOTAL_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
        transport=transport,
    )


def get_http_client() -> httpx.AsyncClient:
    """Return the shared Polar client. Falls back to creating one if not initialized."""
    global _client
    if _client is None:
        _client = build_polar_client(get_settings())
    return _client


async def init_http_client() -> None:
    """Initialize the shared client. Call during app startup."""
    global _client
    _client = build_polar_client(get_settings())


async def close_http_client() -> None:
    """Close the shared client. Call during app shutdown."""
    global _client
    if _client:
        await _client.aclose()
        _client = None
