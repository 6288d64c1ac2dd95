"""
Exception Classes - Strongly typed exception hierarchy.

Transient upstream failures, terminal grant failures and data absence are
distinct types so batch jobs can decide per item whether to retry, revoke,
deactivate or skip.
"""


class DisplexError(Exception):
    """Base exception for all displex errors."""

    pass


# ============================================================================
# Upstream failures
# ============================================================================


class UpstreamError(DisplexError):
    """Base for failures talking to Discord, Tautulli or Overseerr."""

    pass


class NetworkError(UpstreamError):
    """Raised when the transport fails (DNS, connect, read timeout)."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"Network error talking to {service}: {message}")


class UpstreamAuthError(UpstreamError):
    """Raised when an upstream responds with a non-2xx status."""

    def __init__(self, service: str, status_code: int, message: str) -> None:
        self.service = service
        self.status_code = status_code
        self.message = message
        super().__init__(f"{service} rejected request ({status_code}): {message}")


class InvalidGrantError(UpstreamError):
    """Raised when the provider rejects a refresh token as expired or revoked."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid grant: {message}")


class MetadataPublishError(UpstreamError):
    """Raised when the role-connection metadata push is rejected."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Metadata publish failed ({status_code}): {message}")


class StatsProviderError(UpstreamError):
    """Raised when the watch-stats provider returns an unusable response."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Stats provider error: {message}")


# ============================================================================
# Data absence
# ============================================================================


class NoTokenFoundError(DisplexError):
    """Raised when an identity has no active token."""

    def __init__(self, discord_user_id: str) -> None:
        self.discord_user_id = discord_user_id
        super().__init__(f"No active token for discord user {discord_user_id}")


class NoStatsAvailableError(DisplexError):
    """Raised when the stats provider returns no rows for a linked account."""

    def __init__(self, plex_user_id: str) -> None:
        self.plex_user_id = plex_user_id
        super().__init__(f"No watch stats available for plex user {plex_user_id}")


class IdentityNotFoundError(DisplexError):
    """Raised when a discord identity doesn't exist."""

    def __init__(self, discord_user_id: str) -> None:
        self.discord_user_id = discord_user_id
        super().__init__(f"Discord user not found: {discord_user_id}")


class TokenNotFoundError(DisplexError):
    """Raised when a token record doesn't exist."""

    def __init__(self, fingerprint: str) -> None:
        self.fingerprint = fingerprint
        super().__init__(f"Token not found: {fingerprint}")


# ============================================================================
# State and persistence
# ============================================================================


class InvalidTokenTransitionError(DisplexError):
    """Raised when a token status change is not allowed by the state machine."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move token from {current} via {requested}")


class AccountLinkError(DisplexError):
    """Raised when linking a discord identity to a plex account fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Account link failed: {message}")


# ============================================================================
# Jobs
# ============================================================================


class JobAlreadyRunningError(DisplexError):
    """Raised when a pass is requested while the same job is still running."""

    def __init__(self, job: str) -> None:
        self.job = job
        super().__init__(f"Job already running: {job}")
