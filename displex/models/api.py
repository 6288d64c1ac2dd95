"""
API Models - Pydantic models for upstream payloads and the admin API.

Upstream bodies are parsed into these models at the client boundary and then
converted into domain dataclasses, so nothing past the clients handles raw JSON.
"""

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from displex.models.domain import (
    MetadataDefinition,
    PassReport,
    QuotaSettings,
    RoleConnectionMetadata,
    TokenResponse,
    TokenStatus,
    WatchStat,
)

T = TypeVar("T")


# ============================================================================
# Discord
# ============================================================================


class DiscordTokenPayload(BaseModel):
    """Body of a successful POST /oauth2/token."""

    access_token: str = Field(..., min_length=1)
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    def to_domain(self) -> TokenResponse:
        scopes = tuple(self.scope.split()) if self.scope else None
        return TokenResponse(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_in=self.expires_in,
            scopes=scopes,
            token_type=self.token_type,
        )


class DiscordOAuthErrorPayload(BaseModel):
    """RFC 6749 error body returned by the token endpoint."""

    error: str
    error_description: str | None = None


class DiscordUserPayload(BaseModel):
    """Subset of GET /users/@me."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    global_name: str | None = None
    avatar: str | None = None
    discriminator: str | None = None
    locale: str | None = None
    verified: bool | None = None


class RoleConnectionMetadataValues(BaseModel):
    watched_hours: int
    is_subscribed: bool


class RoleConnectionUpdatePayload(BaseModel):
    """Body of PUT /users/@me/applications/{id}/role-connection."""

    platform_name: str
    platform_username: str | None = None
    metadata: RoleConnectionMetadataValues

    @classmethod
    def from_domain(cls, document: RoleConnectionMetadata) -> "RoleConnectionUpdatePayload":
        return cls(
            platform_name=document.platform_name,
            platform_username=document.platform_username,
            metadata=RoleConnectionMetadataValues(
                watched_hours=document.watched_hours,
                is_subscribed=document.is_subscribed,
            ),
        )


class MetadataDefinitionPayload(BaseModel):
    """One entry of /applications/{id}/role-connections/metadata."""

    model_config = ConfigDict(extra="ignore")

    key: str
    name: str
    description: str
    type: int

    def to_domain(self) -> MetadataDefinition:
        return MetadataDefinition(
            key=self.key, name=self.name, description=self.description, type=self.type
        )


# ============================================================================
# Tautulli
# ============================================================================


class TautulliResult(BaseModel, Generic[T]):
    result: str
    message: str | None = None
    data: T


class TautulliResponse(BaseModel, Generic[T]):
    """Envelope of every Tautulli /api/v2 response."""

    response: TautulliResult[T]


class UserWatchStatPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query_days: int
    total_plays: int
    total_time: int

    def to_domain(self) -> WatchStat:
        return WatchStat(
            query_days=self.query_days,
            total_plays=self.total_plays,
            total_time=self.total_time,
        )


class ServerStatusPayload(BaseModel):
    connected: bool


# ============================================================================
# Overseerr
# ============================================================================


class OverseerrUser(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: int
    display_name: str
    plex_username: str | None = None
    plex_id: int | None = None


class OverseerrUserPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    results: list[OverseerrUser]


class UserRequestSettingsPayload(BaseModel):
    """Body of POST /api/v1/user/{id}/settings/main. Nulls clear a quota."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    movie_quota_limit: int | None = None
    movie_quota_days: int | None = None
    tv_quota_limit: int | None = None
    tv_quota_days: int | None = None

    @classmethod
    def from_domain(cls, quota: QuotaSettings) -> "UserRequestSettingsPayload":
        return cls(
            movie_quota_limit=quota.movie_quota_limit,
            movie_quota_days=quota.movie_quota_days,
            tv_quota_limit=quota.tv_quota_limit,
            tv_quota_days=quota.tv_quota_days,
        )


# ============================================================================
# Admin API
# ============================================================================


class TokenRecordResponse(BaseModel):
    """Admin view of a stored token. The refresh token is never returned."""

    model_config = ConfigDict(from_attributes=True)

    access_token: str
    scopes: str
    expires_at: datetime
    discord_user_id: str
    status: TokenStatus
    created_at: datetime
    updated_at: datetime


class CreateTokenRequest(BaseModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    scopes: str = Field(..., min_length=1)
    expires_at: datetime
    discord_user_id: str = Field(..., min_length=1)


class CreateTokenResponse(BaseModel):
    access_token: str


class TokenRefRequest(BaseModel):
    """Identifies a token in a request body so it never appears in a URL."""

    access_token: str = Field(..., min_length=1)


class SetTokenStatusRequest(TokenRefRequest):
    status: TokenStatus


class DiscordUserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PassReportResponse(BaseModel):
    job: str
    completed: bool
    processed: int
    succeeded: int
    failed: int
    skipped: int
    renewed: int
    expired: int
    revoked: int
    deactivated: int
    purged: int
    interrupted: bool

    @classmethod
    def from_domain(cls, report: PassReport) -> "PassReportResponse":
        return cls(
            job=report.job,
            completed=report.completed,
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            renewed=report.renewed,
            expired=report.expired,
            revoked=report.revoked,
            deactivated=report.deactivated,
            purged=report.purged,
            interrupted=report.interrupted,
        )


class MessageResponse(BaseModel):
    message: str
