"""
Batch entry points.

Each run_* function wires clients and stores from settings, runs one pass and
returns its PassReport. A failure while setting the pass up (database
unreachable, upstream missing) aborts that pass only and is reported as
``completed=False``.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from displex.config import Settings, get_settings
from displex.db.session import get_session
from displex.exceptions import DisplexError, JobAlreadyRunningError
from displex.models.domain import PassReport
from displex.observability.metrics import metrics
from displex.services.discord import DiscordClient, register_metadata
from displex.services.discord_oauth import DiscordOAuth2Client
from displex.services.http import build_http_client
from displex.services.identity import DiscordUserStore
from displex.services.overseerr import OverseerrClient
from displex.services.request_tiers import RequestTierSync
from displex.services.scheduler import PeriodicScheduler
from displex.services.subscriber_sync import SubscriberSyncJob
from displex.services.tautulli import TautulliClient
from displex.services.token_lifecycle import TokenLifecycleManager
from displex.services.token_store import DiscordTokenStore

logger = get_logger(__name__)

# One pass per job at a time within this process
_job_locks: dict[str, asyncio.Lock] = {}


@asynccontextmanager
async def exclusive(job: str) -> AsyncIterator[None]:
    """
    Hold ``job``'s lock for the duration of a pass.

    Raises:
        JobAlreadyRunningError: Another pass of ``job`` holds the lock
    """
    lock = _job_locks.setdefault(job, asyncio.Lock())
    if lock.locked():
        raise JobAlreadyRunningError(job)
    async with lock:
        yield


def _already_running(error: JobAlreadyRunningError) -> PassReport:
    logger.warning("job_already_running", job=error.job)
    metrics.record_job_run(error.job, False, 0.0)
    return PassReport(job=error.job, completed=False, already_running=True)


def _aborted(job: str, error: Exception) -> PassReport:
    logger.error("job_aborted", job=job, error=str(error), error_type=type(error).__name__)
    metrics.record_error(type(error).__name__, job)
    metrics.record_job_run(job, False, 0.0)
    return PassReport(job=job, completed=False)


def _oauth_client(settings: Settings, http_client: httpx.AsyncClient) -> DiscordOAuth2Client:
    return DiscordOAuth2Client(
        client_id=settings.discord_client_id,
        client_secret=settings.discord_client_secret,
        http_client=http_client,
        oauth_base=settings.discord_oauth_base,
    )


async def run_token_maintenance(
    settings: Settings | None = None, shutdown: asyncio.Event | None = None
) -> PassReport:
    """Expire, refresh or revoke every Active token, then purge old rows."""
    settings = settings or get_settings()
    try:
        async with (
            exclusive("token_maintenance"),
            build_http_client(settings) as http_client,
            get_session() as session,
        ):
            manager = TokenLifecycleManager(
                DiscordTokenStore(session), _oauth_client(settings, http_client), settings
            )
            return await manager.run_maintenance(shutdown=shutdown)
    except JobAlreadyRunningError as e:
        return _already_running(e)
    except (SQLAlchemyError, OSError, DisplexError) as e:
        return _aborted("token_maintenance", e)


async def run_subscriber_sync(
    settings: Settings | None = None, shutdown: asyncio.Event | None = None
) -> PassReport:
    """Push role-connection metadata for every active linked identity."""
    settings = settings or get_settings()
    if not settings.tautulli_url:
        return _aborted("subscriber_sync", DisplexError("DISPLEX_TAUTULLI_URL is not set"))

    try:
        async with (
            exclusive("subscriber_sync"),
            build_http_client(settings) as http_client,
            get_session() as session,
        ):
            lifecycle = TokenLifecycleManager(
                DiscordTokenStore(session), _oauth_client(settings, http_client), settings
            )
            job = SubscriberSyncJob(
                users=DiscordUserStore(session),
                lifecycle=lifecycle,
                stats_provider=TautulliClient(
                    settings.tautulli_url, settings.tautulli_api_key, http_client
                ),
                publisher=DiscordClient(
                    application_id=settings.discord_client_id,
                    http_client=http_client,
                    api_base=settings.discord_api_base,
                ),
                settings=settings,
            )
            return await job.run(shutdown=shutdown)
    except JobAlreadyRunningError as e:
        return _already_running(e)
    except (SQLAlchemyError, OSError, DisplexError) as e:
        return _aborted("subscriber_sync", e)


async def run_request_tier_sync(
    settings: Settings | None = None, shutdown: asyncio.Event | None = None
) -> PassReport:
    """Reconcile Overseerr request quotas with watch time."""
    settings = settings or get_settings()
    if not settings.overseerr_url or not settings.tautulli_url:
        return _aborted(
            "requests_upgrade",
            DisplexError("DISPLEX_OVERSEERR_URL and DISPLEX_TAUTULLI_URL are required"),
        )

    try:
        async with exclusive("requests_upgrade"), build_http_client(settings) as http_client:
            job = RequestTierSync(
                overseerr=OverseerrClient(
                    settings.overseerr_url, settings.overseerr_api_key, http_client
                ),
                stats_provider=TautulliClient(
                    settings.tautulli_url, settings.tautulli_api_key, http_client
                ),
                tiers=settings.request_tiers,
            )
            return await job.run(shutdown=shutdown)
    except JobAlreadyRunningError as e:
        return _already_running(e)
    except DisplexError as e:
        return _aborted("requests_upgrade", e)


async def run_metadata_registration(settings: Settings | None = None) -> PassReport:
    """Register the role-connection metadata definitions with Discord."""
    settings = settings or get_settings()
    if not settings.discord_bot_token:
        return _aborted("metadata", DisplexError("DISPLEX_DISCORD_BOT_TOKEN is not set"))

    try:
        async with build_http_client(settings) as http_client:
            client = DiscordClient(
                application_id=settings.discord_client_id,
                http_client=http_client,
                bot_token=settings.discord_bot_token,
                api_base=settings.discord_api_base,
            )
            updated = await register_metadata(client)
    except DisplexError as e:
        return _aborted("metadata", e)

    metrics.record_job_run("metadata", True, 0.0)
    return PassReport(job="metadata", completed=True, processed=1, succeeded=int(updated))


def build_scheduler(
    settings: Settings | None = None, shutdown: asyncio.Event | None = None
) -> PeriodicScheduler:
    """Maintenance first, then sync, each on its configured interval."""
    settings = settings or get_settings()
    scheduler = PeriodicScheduler(shutdown)
    scheduler.add_job(
        "token_maintenance",
        settings.maintenance_interval_seconds,
        lambda stop: run_token_maintenance(settings, shutdown=stop),
    )
    scheduler.add_job(
        "subscriber_sync",
        settings.sync_interval_seconds,
        lambda stop: run_subscriber_sync(settings, shutdown=stop),
    )
    return scheduler
