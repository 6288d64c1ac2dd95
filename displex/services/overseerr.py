"""
Overseerr client - user listing and request quota settings.
"""

import httpx
from pydantic import ValidationError
from structlog import get_logger

from displex.exceptions import NetworkError, UpstreamAuthError
from displex.models.api import OverseerrUser, OverseerrUserPage, UserRequestSettingsPayload
from displex.models.domain import QuotaSettings
from displex.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE = "overseerr"


class OverseerrClient:
    """Client for Overseerr's /api/v1 API, authenticated with X-Api-Key."""

    def __init__(self, base_url: str, api_key: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http_client = http_client

    async def get_users(self, take: int = 100) -> list[OverseerrUser]:
        response = await self._request(
            "GET", "/api/v1/user", operation="get_users", params={"take": str(take)}
        )
        try:
            return OverseerrUserPage.model_validate_json(response.content).results
        except ValidationError as e:
            raise UpstreamAuthError(SERVICE, response.status_code, f"malformed users: {e}") from e

    async def set_user_request_settings(self, user_id: int, quota: QuotaSettings) -> None:
        """Set a user's movie/tv quota. None values clear the limit."""
        body = UserRequestSettingsPayload.from_domain(quota).model_dump(by_alias=True)
        await self._request(
            "POST",
            f"/api/v1/user/{user_id}/settings/main",
            operation="set_user_request_settings",
            json=body,
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: dict[str, str] | None = None,
        json: object | None = None,
    ) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                headers={"X-Api-Key": self.api_key},
                params=params,
                json=json,
            )
        except httpx.HTTPError as e:
            logger.error("overseerr_unreachable", operation=operation, error=str(e))
            metrics.record_upstream(SERVICE, operation, "network_error")
            raise NetworkError(SERVICE, str(e)) from e

        if response.is_error:
            logger.error(
                "overseerr_request_failed", operation=operation, status=response.status_code
            )
            metrics.record_upstream(SERVICE, operation, "rejected")
            raise UpstreamAuthError(SERVICE, response.status_code, response.text[:200])

        metrics.record_upstream(SERVICE, operation, "ok")
        return response
