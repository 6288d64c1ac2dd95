"""
Application Configuration - Pydantic Settings for type-safe config.

All configuration is strongly typed and read from DISPLEX_* environment variables.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from datetime import timedelta

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class QuotaLimit(BaseModel):
    """Request quota for one media type."""

    quota_limit: int = Field(..., ge=0)
    quota_days: int = Field(..., ge=0)


class RequestTier(BaseModel):
    """A named request quota bracket unlocked at a watch-hour threshold."""

    name: str = Field(..., min_length=1)
    watch_hours: int = Field(..., ge=0)
    movie: QuotaLimit
    tv: QuotaLimit


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    application_name: str = "Displex"
    application_version: str = "0.1.0"
    hostname: str = "localhost"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 5
    database_echo: bool = False

    # Discord application
    discord_client_id: str = ""
    discord_client_secret: str = ""
    discord_bot_token: str = ""
    discord_redirect_uri: str | None = None
    discord_api_base: str = "https://discord.com/api/v10"
    discord_oauth_base: str = "https://discord.com/api"

    # Tautulli (watch statistics)
    tautulli_url: str = ""
    tautulli_api_key: str = ""

    # Overseerr (request management)
    overseerr_url: str = ""
    overseerr_api_key: str = ""

    # Outbound HTTP
    accept_invalid_certs: bool = False
    http_connect_timeout: float = 10.0
    http_timeout: float = 30.0

    # Token policy
    token_refresh_window_days: int = 2
    token_exchange_fallback_seconds: int = 3600 * 24 * 7
    token_refresh_fallback_seconds: int = 3600 * 24 * 3
    sync_stale_threshold_hours: int = 0
    token_retention_days: int = 30

    # Scheduler
    scheduler_enabled: bool = False
    maintenance_interval_seconds: int = 3600
    sync_interval_seconds: int = 3600

    # Request tiers, ascending by watch_hours after validation
    request_tiers: list[RequestTier] = Field(default_factory=list)

    # Ops API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    admin_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "displex"

    model_config = SettingsConfigDict(
        env_prefix="DISPLEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The process MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DISPLEX_DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DISPLEX_DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if not self.discord_client_id:
            errors.append("DISPLEX_DISCORD_CLIENT_ID is required but empty or missing")
        if not self.discord_client_secret:
            errors.append("DISPLEX_DISCORD_CLIENT_SECRET is required but empty or missing")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        self.request_tiers = sorted(self.request_tiers, key=lambda tier: tier.watch_hours)
        return self

    @property
    def redirect_uri(self) -> str:
        """OAuth redirect URI registered with Discord."""
        return self.discord_redirect_uri or f"https://{self.hostname}/discord/callback"

    @property
    def refresh_window(self) -> timedelta:
        return timedelta(days=self.token_refresh_window_days)

    @property
    def sync_stale_threshold(self) -> timedelta:
        return timedelta(hours=self.sync_stale_threshold_hours)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.token_retention_days)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
