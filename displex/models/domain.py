"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses. The token
status state machine lives here so every caller goes through one transition
table.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, IntEnum

from displex.exceptions import InvalidTokenTransitionError


class TokenStatus(IntEnum):
    """Lifecycle status of a stored token. Persisted as a small integer."""

    ACTIVE = 0
    REVOKED = 1
    RENEWED = 2
    EXPIRED = 3

    @property
    def is_terminal(self) -> bool:
        return self is not TokenStatus.ACTIVE


class TokenEvent(str, Enum):
    """Things that can happen to an active token during maintenance."""

    REFRESHED = "refreshed"  # a successor token was stored
    GRANT_INVALID = "grant_invalid"  # provider rejected the refresh token
    LAPSED = "lapsed"  # observed past expires_at without a refresh attempt


_TRANSITIONS: dict[tuple[TokenStatus, TokenEvent], TokenStatus] = {
    (TokenStatus.ACTIVE, TokenEvent.REFRESHED): TokenStatus.RENEWED,
    (TokenStatus.ACTIVE, TokenEvent.GRANT_INVALID): TokenStatus.REVOKED,
    (TokenStatus.ACTIVE, TokenEvent.LAPSED): TokenStatus.EXPIRED,
}


def transition(status: TokenStatus, event: TokenEvent) -> TokenStatus:
    """Return the status a token moves to when ``event`` happens to it."""
    try:
        return _TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTokenTransitionError(status.name, event.value) from None


def check_status_change(current: TokenStatus, target: TokenStatus) -> None:
    """
    Validate a direct status assignment.

    Terminal statuses never change. Re-asserting the current status is allowed.
    """
    if current is target:
        return
    if current.is_terminal:
        raise InvalidTokenTransitionError(current.name, target.name)


class TokenAction(str, Enum):
    """What the maintenance pass should do with an active token."""

    LEAVE = "leave"
    EXPIRE = "expire"
    REFRESH = "refresh"


def plan_maintenance(expires_at: datetime, now: datetime, window: timedelta) -> TokenAction:
    """
    Decide the maintenance action for an active token.

    Already expired tokens are expired without a refresh attempt; tokens that
    expire within ``window`` are refreshed; everything else is left alone.
    """
    if expires_at <= now:
        return TokenAction.EXPIRE
    if expires_at < now + window:
        return TokenAction.REFRESH
    return TokenAction.LEAVE


def is_stale(expires_at: datetime, now: datetime, threshold: timedelta) -> bool:
    """True when a token expired more than ``threshold`` ago."""
    return expires_at < now - threshold


def token_fingerprint(token: str) -> str:
    """Short SHA-256 prefix of a token, safe to log."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


@dataclass(frozen=True)
class TokenResponse:
    """Token grant returned by the OAuth2 provider."""

    access_token: str
    refresh_token: str | None
    expires_in: int | None
    scopes: tuple[str, ...] | None
    token_type: str = "Bearer"

    def __post_init__(self) -> None:
        if not self.access_token:
            raise ValueError("access_token cannot be empty")
        if self.expires_in is not None and self.expires_in < 0:
            raise ValueError(f"expires_in cannot be negative: {self.expires_in}")

    def expires_at(self, issued_at: datetime, fallback_seconds: int) -> datetime:
        """Absolute expiry, using ``fallback_seconds`` when the provider omitted a lifetime."""
        lifetime = self.expires_in if self.expires_in is not None else fallback_seconds
        return issued_at + timedelta(seconds=lifetime)

    @property
    def scope_string(self) -> str | None:
        """Granted scopes in the comma-joined storage format."""
        if not self.scopes:
            return None
        return ",".join(self.scopes)


@dataclass(frozen=True)
class AuthorizationRequest:
    """Provider authorization URL and the CSRF state the callback must echo."""

    url: str
    state: str


@dataclass(frozen=True)
class WatchStat:
    """Aggregate watch time for one query window."""

    query_days: int
    total_plays: int
    total_time: int

    @property
    def watched_hours(self) -> int:
        """Whole hours watched; fractional hours are truncated."""
        return self.total_time // 3600


@dataclass(frozen=True)
class RoleConnectionMetadata:
    """The fixed-shape metadata document pushed to the role-connection endpoint."""

    platform_name: str
    watched_hours: int
    is_subscribed: bool
    platform_username: str | None = None

    def __post_init__(self) -> None:
        if self.watched_hours < 0:
            raise ValueError(f"watched_hours cannot be negative: {self.watched_hours}")

    @classmethod
    def for_subscriber(
        cls, platform_name: str, stat: WatchStat, platform_username: str | None = None
    ) -> "RoleConnectionMetadata":
        return cls(
            platform_name=platform_name,
            watched_hours=stat.watched_hours,
            is_subscribed=True,
            platform_username=platform_username,
        )


@dataclass(frozen=True)
class MetadataDefinition:
    """A role-connection metadata field registered on the application."""

    key: str
    name: str
    description: str
    type: int


# Integer >= comparison (2) and boolean equal (7) in Discord's metadata type table
ROLE_CONNECTION_METADATA: tuple[MetadataDefinition, ...] = (
    MetadataDefinition(
        key="is_subscribed",
        name="⭐",
        description="Access to Plex Server",
        type=7,
    ),
    MetadataDefinition(
        key="watched_hours",
        name="Hours Streamed",
        description="Hours spent streaming",
        type=2,
    ),
)


@dataclass(frozen=True)
class QuotaSettings:
    """Request quota pushed to the request-management service. None clears a limit."""

    movie_quota_limit: int | None
    movie_quota_days: int | None
    tv_quota_limit: int | None
    tv_quota_days: int | None

    @classmethod
    def default(cls) -> "QuotaSettings":
        return cls(None, None, None, None)


@dataclass
class PassReport:
    """Outcome of one batch pass. Per-item details only go to logs and metrics."""

    job: str
    completed: bool = False
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    renewed: int = 0
    expired: int = 0
    revoked: int = 0
    deactivated: int = 0
    purged: int = 0
    interrupted: bool = False
    already_running: bool = False
