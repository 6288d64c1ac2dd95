"""
Discord OAuth2 client.

Authorization URL construction, code exchange, refresh and revocation against
Discord's token endpoints. Knows nothing about storage.

Failure mapping:
- transport failure           -> NetworkError
- 400 with error=invalid_grant on refresh -> InvalidGrantError
- any other non-2xx           -> UpstreamAuthError
"""

import hmac
import secrets
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError
from structlog import get_logger

from displex.exceptions import InvalidGrantError, NetworkError, UpstreamAuthError
from displex.models.api import DiscordOAuthErrorPayload, DiscordTokenPayload
from displex.models.domain import AuthorizationRequest, TokenResponse, token_fingerprint
from displex.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE = "discord_oauth"


def verify_state(expected: str, received: str | None) -> bool:
    """Constant-time comparison of the CSRF state echoed back by the callback."""
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())


class DiscordOAuth2Client:
    """OAuth2 client for Discord's authorization_code and refresh_token grants."""

    SCOPES = ("identify", "role_connections.write")

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        oauth_base: str = "https://discord.com/api",
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.http_client = http_client
        self.authorize_endpoint = f"{oauth_base}/oauth2/authorize"
        self.token_endpoint = f"{oauth_base}/oauth2/token"
        self.revoke_endpoint = f"{oauth_base}/oauth2/token/revoke"

    @property
    def scope_string(self) -> str:
        """Requested scopes in the comma-joined storage format."""
        return ",".join(self.SCOPES)

    def authorize_url(self, redirect_uri: str) -> AuthorizationRequest:
        """Build the authorization URL with a fresh unguessable state token."""
        state = secrets.token_urlsafe(32)
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "state": state,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.SCOPES),
        }
        return AuthorizationRequest(url=f"{self.authorize_endpoint}?{urlencode(params)}", state=state)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for a token."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        response = await self._post_token(data, operation="exchange_code")
        if response.is_error:
            logger.error(
                "token_exchange_failed", status=response.status_code, text=response.text[:200]
            )
            metrics.record_upstream(SERVICE, "exchange_code", "rejected")
            raise UpstreamAuthError(SERVICE, response.status_code, _error_message(response))

        metrics.record_upstream(SERVICE, "exchange_code", "ok")
        return _parse_token(response)

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new token."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        response = await self._post_token(data, operation="refresh")

        if response.is_error:
            error = _error_payload(response)
            if response.status_code == 400 and error is not None and error.error == "invalid_grant":
                logger.warning(
                    "refresh_token_rejected",
                    refresh_token=token_fingerprint(refresh_token),
                    description=error.error_description,
                )
                metrics.record_upstream(SERVICE, "refresh", "invalid_grant")
                raise InvalidGrantError(error.error_description or error.error)

            logger.error(
                "token_refresh_failed", status=response.status_code, text=response.text[:200]
            )
            metrics.record_upstream(SERVICE, "refresh", "rejected")
            raise UpstreamAuthError(SERVICE, response.status_code, _error_message(response))

        metrics.record_upstream(SERVICE, "refresh", "ok")
        return _parse_token(response)

    async def revoke(self, refresh_token: str) -> bool:
        """
        Revoke a refresh token at the provider.

        Best-effort: failures are logged and reported as False, never raised.
        """
        data = {"token": refresh_token, "token_type_hint": "refresh_token"}
        try:
            response = await self.http_client.post(
                self.revoke_endpoint, data=data, auth=(self.client_id, self.client_secret)
            )
        except httpx.HTTPError as e:
            logger.warning("token_revoke_error", error=str(e))
            metrics.record_upstream(SERVICE, "revoke", "network_error")
            return False

        if response.is_error:
            logger.warning(
                "token_revoke_failed", status=response.status_code, text=response.text[:200]
            )
            metrics.record_upstream(SERVICE, "revoke", "rejected")
            return False

        metrics.record_upstream(SERVICE, "revoke", "ok")
        logger.info("token_revoked_upstream", refresh_token=token_fingerprint(refresh_token))
        return True

    async def _post_token(self, data: dict[str, str], operation: str) -> httpx.Response:
        try:
            return await self.http_client.post(
                self.token_endpoint, data=data, auth=(self.client_id, self.client_secret)
            )
        except httpx.HTTPError as e:
            logger.error("token_endpoint_unreachable", operation=operation, error=str(e))
            metrics.record_upstream(SERVICE, operation, "network_error")
            raise NetworkError(SERVICE, str(e)) from e


def _parse_token(response: httpx.Response) -> TokenResponse:
    try:
        return DiscordTokenPayload.model_validate_json(response.content).to_domain()
    except (ValidationError, ValueError) as e:
        raise UpstreamAuthError(
            SERVICE, response.status_code, f"malformed token response: {e}"
        ) from e


def _error_payload(response: httpx.Response) -> DiscordOAuthErrorPayload | None:
    try:
        return DiscordOAuthErrorPayload.model_validate_json(response.content)
    except ValidationError:
        return None


def _error_message(response: httpx.Response) -> str:
    error = _error_payload(response)
    if error is None:
        return response.text[:200]
    return error.error_description or error.error
