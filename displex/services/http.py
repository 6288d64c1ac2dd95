"""
Shared outbound HTTP client.

One httpx.AsyncClient is shared by the Discord, Tautulli and Overseerr
clients so connection pools and timeouts are configured in one place.
"""

import httpx

from displex.config import Settings


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the shared async client with connect/read timeouts from settings."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout, connect=settings.http_connect_timeout),
        limits=httpx.Limits(keepalive_expiry=90.0),
        headers={"Accept": "application/json"},
        verify=not settings.accept_invalid_certs,
    )
