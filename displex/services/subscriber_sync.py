"""
Subscriber Sync Job.

For every active identity with a linked Plex account, sequentially:
fetch the latest token (refreshing inline when it is stale), read all-time
watch stats and push the role-connection metadata document.

One identity's failure never aborts the batch. Only a terminal refresh
failure deactivates an identity; missing stats and publish failures are
treated as transient.
"""

import asyncio
import time
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from displex.config import Settings
from displex.db.models import utc_now
from displex.exceptions import (
    DisplexError,
    InvalidGrantError,
    NoStatsAvailableError,
    NoTokenFoundError,
    UpstreamError,
)
from displex.models.domain import PassReport, RoleConnectionMetadata, WatchStat, is_stale
from displex.observability.logging import log_context
from displex.observability.metrics import metrics
from displex.observability.tracing import trace_operation
from displex.services.discord import DiscordClient
from displex.services.identity import DiscordUserStore
from displex.services.tautulli import TautulliClient
from displex.services.token_lifecycle import TokenLifecycleManager

logger = get_logger(__name__)

JOB_NAME = "subscriber_sync"


def all_time_stat(stats: list[WatchStat]) -> WatchStat | None:
    """The all-time (query_days == 0) row, else the first row returned."""
    for stat in stats:
        if stat.query_days == 0:
            return stat
    return stats[0] if stats else None


class SubscriberSyncJob:
    """Pushes watched-hours and subscriber metadata for every linked identity."""

    def __init__(
        self,
        users: DiscordUserStore,
        lifecycle: TokenLifecycleManager,
        stats_provider: TautulliClient,
        publisher: DiscordClient,
        settings: Settings,
    ) -> None:
        self.users = users
        self.lifecycle = lifecycle
        self.stats_provider = stats_provider
        self.publisher = publisher
        self.settings = settings

    async def run(
        self,
        now: datetime | None = None,
        shutdown: asyncio.Event | None = None,
    ) -> PassReport:
        now = now or utc_now()
        report = PassReport(job=JOB_NAME)
        start_time = time.perf_counter()

        with trace_operation(JOB_NAME) as span:
            candidates = [
                (user.id, plex_user.id, plex_user.username)
                for user, plex_user in await self.users.list_users_for_refresh()
            ]
            logger.info("subscriber_sync_started", identities=len(candidates))

            for discord_user_id, plex_user_id, plex_username in candidates:
                if shutdown is not None and shutdown.is_set():
                    report.interrupted = True
                    logger.info("subscriber_sync_interrupted", processed=report.processed)
                    break

                report.processed += 1
                with log_context(discord_user_id=discord_user_id, plex_user_id=plex_user_id):
                    outcome = await self._sync_one(
                        discord_user_id, plex_user_id, plex_username, now, report
                    )
                metrics.record_job_item(JOB_NAME, outcome)

            span.set_attribute("processed", report.processed)
            span.set_attribute("failed", report.failed)

        report.completed = not report.interrupted
        duration = time.perf_counter() - start_time
        metrics.record_job_run(JOB_NAME, report.completed, duration)
        logger.info(
            "subscriber_sync_finished",
            processed=report.processed,
            succeeded=report.succeeded,
            skipped=report.skipped,
            failed=report.failed,
            renewed=report.renewed,
            deactivated=report.deactivated,
            duration_seconds=round(duration, 3),
        )
        return report

    async def _sync_one(
        self,
        discord_user_id: str,
        plex_user_id: str,
        plex_username: str,
        now: datetime,
        report: PassReport,
    ) -> str:
        """Sync one identity. Returns the outcome label and never raises."""
        try:
            token = await self.lifecycle.latest_token(discord_user_id)
            if token is None:
                raise NoTokenFoundError(discord_user_id)

            if is_stale(token.expires_at, now, self.settings.sync_stale_threshold):
                previous = token.access_token
                try:
                    token = await self.lifecycle.refresh(token, now)
                except InvalidGrantError:
                    await self.users.deactivate(discord_user_id)
                    report.deactivated += 1
                    report.revoked += 1
                    report.failed += 1
                    return "deactivated"
                if token.access_token != previous:
                    report.renewed += 1

            stat = all_time_stat(await self.stats_provider.get_user_watch_time_stats(plex_user_id))
            if stat is None:
                raise NoStatsAvailableError(plex_user_id)

            document = RoleConnectionMetadata.for_subscriber(
                self.settings.application_name, stat, platform_username=plex_username
            )
            await self.publisher.push_role_connection(token.access_token, document)

        except (NoTokenFoundError, NoStatsAvailableError) as e:
            logger.warning("subscriber_sync_skipped", reason=str(e))
            report.skipped += 1
            return "skipped"
        except UpstreamError as e:
            logger.warning("subscriber_sync_failed", error=str(e), error_type=type(e).__name__)
            metrics.record_error(type(e).__name__, JOB_NAME)
            report.failed += 1
            return "failed"
        except DisplexError as e:
            logger.error("subscriber_sync_failed", error=str(e), error_type=type(e).__name__)
            metrics.record_error(type(e).__name__, JOB_NAME)
            report.failed += 1
            return "failed"
        except SQLAlchemyError as e:
            await self.users.session.rollback()
            logger.error("subscriber_sync_database_error", error=str(e))
            metrics.record_error(type(e).__name__, JOB_NAME)
            report.failed += 1
            return "failed"
        except Exception as e:
            await self.users.session.rollback()
            logger.exception("subscriber_sync_crashed", error=str(e))
            metrics.record_error(type(e).__name__, JOB_NAME)
            report.failed += 1
            return "failed"

        logger.info(
            "subscriber_metadata_published",
            watched_hours=document.watched_hours,
            is_subscribed=document.is_subscribed,
        )
        report.succeeded += 1
        return "published"
