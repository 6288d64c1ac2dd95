"""
Tautulli client - read-only watch statistics.
"""

from enum import Enum

import httpx
from pydantic import ValidationError
from structlog import get_logger

from displex.exceptions import NetworkError, StatsProviderError, UpstreamAuthError
from displex.models.api import ServerStatusPayload, TautulliResponse, UserWatchStatPayload
from displex.models.domain import WatchStat
from displex.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE = "tautulli"


class QueryDays(str, Enum):
    """Tautulli query windows. ``TOTAL`` (0) means all time."""

    DAY = "1"
    WEEK = "7"
    MONTH = "30"
    TOTAL = "0"


class TautulliClient:
    """Client for Tautulli's /api/v2 command API."""

    def __init__(self, base_url: str, api_key: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http_client = http_client

    async def get_user_watch_time_stats(
        self,
        user_id: str,
        grouping: bool | None = True,
        query_days: QueryDays | None = QueryDays.TOTAL,
    ) -> list[WatchStat]:
        """Aggregate watch time for a Plex user. Defaults to the all-time window."""
        params = {"cmd": "get_user_watch_time_stats", "user_id": user_id}
        if grouping is not None:
            params["grouping"] = "1" if grouping else "0"
        if query_days is not None:
            params["query_days"] = query_days.value

        response = await self._get(params, operation="get_user_watch_time_stats")
        try:
            envelope = TautulliResponse[list[UserWatchStatPayload]].model_validate_json(
                response.content
            )
        except ValidationError as e:
            raise StatsProviderError(f"malformed watch stats: {e}") from e

        if envelope.response.result != "success":
            raise StatsProviderError(envelope.response.message or envelope.response.result)

        return [stat.to_domain() for stat in envelope.response.data]

    async def server_status(self) -> bool:
        """Whether Tautulli is connected to the Plex server."""
        response = await self._get({"cmd": "server_status"}, operation="server_status")
        try:
            envelope = TautulliResponse[ServerStatusPayload].model_validate_json(response.content)
        except ValidationError as e:
            raise StatsProviderError(f"malformed server status: {e}") from e
        return envelope.response.data.connected

    async def _get(self, params: dict[str, str], operation: str) -> httpx.Response:
        try:
            response = await self.http_client.get(
                f"{self.base_url}/api/v2", params={"apikey": self.api_key, **params}
            )
        except httpx.HTTPError as e:
            logger.error("tautulli_unreachable", operation=operation, error=str(e))
            metrics.record_upstream(SERVICE, operation, "network_error")
            raise NetworkError(SERVICE, str(e)) from e

        if response.is_error:
            logger.error("tautulli_request_failed", operation=operation, status=response.status_code)
            metrics.record_upstream(SERVICE, operation, "rejected")
            raise UpstreamAuthError(SERVICE, response.status_code, response.text[:200])

        metrics.record_upstream(SERVICE, operation, "ok")
        return response
