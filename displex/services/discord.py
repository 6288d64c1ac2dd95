"""
Discord REST client.

- Metadata Publisher: pushes the role-connection document with the end
  user's bearer token.
- Identity fetch: GET /users/@me.
- Role-connection metadata registration with the bot token.
"""

import httpx
from pydantic import TypeAdapter, ValidationError
from structlog import get_logger

from displex.exceptions import MetadataPublishError, NetworkError, UpstreamAuthError
from displex.models.api import (
    DiscordUserPayload,
    MetadataDefinitionPayload,
    RoleConnectionUpdatePayload,
)
from displex.models.domain import (
    ROLE_CONNECTION_METADATA,
    MetadataDefinition,
    RoleConnectionMetadata,
)
from displex.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE = "discord"

_definitions_adapter = TypeAdapter(list[MetadataDefinitionPayload])


class DiscordClient:
    """Bearer- and bot-authenticated calls to the Discord REST API."""

    def __init__(
        self,
        application_id: str,
        http_client: httpx.AsyncClient,
        bot_token: str = "",
        api_base: str = "https://discord.com/api/v10",
    ):
        self.application_id = application_id
        self.http_client = http_client
        self.bot_token = bot_token
        self.api_base = api_base

    async def push_role_connection(
        self, access_token: str, document: RoleConnectionMetadata
    ) -> None:
        """PUT the metadata document for the user owning ``access_token``."""
        payload = RoleConnectionUpdatePayload.from_domain(document)
        url = f"{self.api_base}/users/@me/applications/{self.application_id}/role-connection"
        try:
            response = await self.http_client.put(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload.model_dump(exclude_none=True),
            )
        except httpx.HTTPError as e:
            metrics.record_upstream(SERVICE, "push_role_connection", "network_error")
            raise NetworkError(SERVICE, str(e)) from e

        if response.is_error:
            metrics.record_upstream(SERVICE, "push_role_connection", "rejected")
            raise MetadataPublishError(response.status_code, response.text[:200])

        metrics.record_upstream(SERVICE, "push_role_connection", "ok")

    async def get_current_user(self, access_token: str) -> DiscordUserPayload:
        """GET /users/@me for the user owning ``access_token``."""
        response = await self._request(
            "GET",
            "/users/@me",
            operation="get_current_user",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        try:
            return DiscordUserPayload.model_validate_json(response.content)
        except ValidationError as e:
            raise UpstreamAuthError(SERVICE, response.status_code, f"malformed user: {e}") from e

    async def get_metadata_definitions(self) -> list[MetadataDefinition]:
        """Role-connection metadata currently registered on the application."""
        response = await self._request(
            "GET",
            f"/applications/{self.application_id}/role-connections/metadata",
            operation="get_metadata_definitions",
            headers=self._bot_headers(),
        )
        try:
            return [d.to_domain() for d in _definitions_adapter.validate_json(response.content)]
        except ValidationError as e:
            raise UpstreamAuthError(
                SERVICE, response.status_code, f"malformed metadata definitions: {e}"
            ) from e

    async def put_metadata_definitions(self, definitions: list[MetadataDefinition]) -> None:
        """Replace the application's role-connection metadata definitions."""
        body = [
            {"key": d.key, "name": d.name, "description": d.description, "type": d.type}
            for d in definitions
        ]
        await self._request(
            "PUT",
            f"/applications/{self.application_id}/role-connections/metadata",
            operation="put_metadata_definitions",
            headers=self._bot_headers(),
            json=body,
        )

    def _bot_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bot {self.bot_token}"}

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        headers: dict[str, str],
        json: object | None = None,
    ) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method, f"{self.api_base}{path}", headers=headers, json=json
            )
        except httpx.HTTPError as e:
            logger.error("discord_unreachable", operation=operation, error=str(e))
            metrics.record_upstream(SERVICE, operation, "network_error")
            raise NetworkError(SERVICE, str(e)) from e

        if response.is_error:
            logger.error(
                "discord_request_failed",
                operation=operation,
                status=response.status_code,
                text=response.text[:200],
            )
            metrics.record_upstream(SERVICE, operation, "rejected")
            raise UpstreamAuthError(SERVICE, response.status_code, response.text[:200])

        metrics.record_upstream(SERVICE, operation, "ok")
        return response


async def register_metadata(
    client: DiscordClient,
    definitions: tuple[MetadataDefinition, ...] = ROLE_CONNECTION_METADATA,
) -> bool:
    """
    Make the application's registered metadata match ``definitions``.

    Returns True when an update was pushed, False when already in sync.
    """
    registered = await client.get_metadata_definitions()
    wanted = sorted(definitions, key=lambda d: d.key)
    if sorted(registered, key=lambda d: d.key) == wanted:
        logger.info("role_connection_metadata_unchanged", keys=[d.key for d in wanted])
        return False

    await client.put_metadata_definitions(wanted)
    logger.info("role_connection_metadata_registered", keys=[d.key for d in wanted])
    return True
