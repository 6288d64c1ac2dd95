"""
Status API routes - health checks for displex dependencies.

Public endpoint (no auth). Results are cached for 10 seconds.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

import httpx
from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text
from structlog import get_logger

from displex.config import settings
from displex.db.session import get_session
from displex.exceptions import DisplexError
from displex.services.http import build_http_client
from displex.services.tautulli import TautulliClient

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

DEGRADED_LATENCY_THRESHOLD = 1000  # ms

_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str = "displex"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _timed_status(start: float, timestamp: str) -> ProviderStatus:
    latency_ms = int((time.perf_counter() - start) * 1000)
    degraded = latency_ms > DEGRADED_LATENCY_THRESHOLD
    return ProviderStatus(
        status=StatusLevel.DEGRADED if degraded else StatusLevel.OPERATIONAL,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if degraded else None,
    )


async def check_database() -> ProviderStatus:
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("database_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE, last_check=timestamp, message="Connection failed"
        )
    return _timed_status(start, timestamp)


async def check_discord() -> ProviderStatus:
    """Discord API reachability. /gateway needs no auth."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with build_http_client(settings) as client:
            response = await client.get(f"{settings.discord_api_base}/gateway")
    except httpx.TimeoutException:
        return ProviderStatus(status=StatusLevel.OUTAGE, last_check=timestamp, message="Timeout")
    except httpx.HTTPError as e:
        logger.warning("discord_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE, last_check=timestamp, message="Connection failed"
        )

    if response.status_code != 200:
        return ProviderStatus(
            status=StatusLevel.DEGRADED,
            last_check=timestamp,
            message=f"Unexpected status: {response.status_code}",
        )
    return _timed_status(start, timestamp)


async def check_tautulli() -> ProviderStatus:
    """Tautulli reachability and its connection to the Plex server."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    if not settings.tautulli_url:
        return ProviderStatus(
            status=StatusLevel.OPERATIONAL,
            latency_ms=0,
            last_check=timestamp,
            message="Not configured",
        )

    try:
        async with build_http_client(settings) as client:
            connected = await TautulliClient(
                settings.tautulli_url, settings.tautulli_api_key, client
            ).server_status()
    except DisplexError as e:
        logger.warning("tautulli_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE, last_check=timestamp, message="Connection failed"
        )

    if not connected:
        return ProviderStatus(
            status=StatusLevel.DEGRADED,
            last_check=timestamp,
            message="Plex server not connected",
        )
    return _timed_status(start, timestamp)


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status() -> ServiceStatusResponse:
    """Database, Discord and Tautulli status, cached for 10 seconds."""
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    database, discord, tautulli = await asyncio.gather(
        check_database(), check_discord(), check_tautulli()
    )
    providers = {"database": database, "discord": discord, "tautulli": tautulli}

    response = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.application_version,
        providers=providers,
    )
    _status_cache[cache_key] = (now, response)
    return response
