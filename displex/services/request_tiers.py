"""
Request tiers - map watched hours to a request quota bracket and push it
to Overseerr.
"""

import asyncio
import time
from collections.abc import Sequence

from structlog import get_logger

from displex.config import RequestTier
from displex.exceptions import DisplexError, NoStatsAvailableError
from displex.models.api import OverseerrUser
from displex.models.domain import PassReport, QuotaSettings
from displex.observability.logging import log_context
from displex.observability.metrics import metrics
from displex.observability.tracing import trace_operation
from displex.services.overseerr import OverseerrClient
from displex.services.subscriber_sync import all_time_stat
from displex.services.tautulli import TautulliClient

logger = get_logger(__name__)

JOB_NAME = "requests_upgrade"


def classify_request_tier(watch_hours: int, tiers: Sequence[RequestTier]) -> RequestTier | None:
    """
    Highest tier whose threshold is <= ``watch_hours``.

    ``tiers`` must be ascending by threshold. None means the default tier.
    """
    selected: RequestTier | None = None
    for tier in tiers:
        if tier.watch_hours <= watch_hours:
            selected = tier
    return selected


def quota_for_tier(tier: RequestTier | None) -> QuotaSettings:
    if tier is None:
        return QuotaSettings.default()
    return QuotaSettings(
        movie_quota_limit=tier.movie.quota_limit,
        movie_quota_days=tier.movie.quota_days,
        tv_quota_limit=tier.tv.quota_limit,
        tv_quota_days=tier.tv.quota_days,
    )


class RequestTierSync:
    """Reconciles every Overseerr user's request quota with their watch time."""

    def __init__(
        self,
        overseerr: OverseerrClient,
        stats_provider: TautulliClient,
        tiers: Sequence[RequestTier],
    ) -> None:
        self.overseerr = overseerr
        self.stats_provider = stats_provider
        self.tiers = tiers

    async def apply(self, user: OverseerrUser) -> RequestTier | None:
        """Classify one user and push the matching quota. Returns the tier applied."""
        if user.plex_id is None:
            raise NoStatsAvailableError(str(user.id))

        stats = await self.stats_provider.get_user_watch_time_stats(str(user.plex_id))
        stat = all_time_stat(stats)
        if stat is None:
            raise NoStatsAvailableError(str(user.plex_id))

        tier = classify_request_tier(stat.watched_hours, self.tiers)
        await self.overseerr.set_user_request_settings(user.id, quota_for_tier(tier))
        logger.info(
            "request_tier_applied",
            overseerr_user_id=user.id,
            display_name=user.display_name,
            watch_hours=stat.watched_hours,
            tier=tier.name if tier else "default",
        )
        return tier

    async def run(self, shutdown: asyncio.Event | None = None) -> PassReport:
        report = PassReport(job=JOB_NAME)
        start_time = time.perf_counter()

        with trace_operation(JOB_NAME):
            users = await self.overseerr.get_users()
            logger.info("requests_upgrade_started", users=len(users))

            for user in users:
                if shutdown is not None and shutdown.is_set():
                    report.interrupted = True
                    break

                report.processed += 1
                with log_context(overseerr_user_id=user.id):
                    try:
                        await self.apply(user)
                    except NoStatsAvailableError as e:
                        logger.warning("request_tier_skipped", reason=str(e))
                        report.skipped += 1
                        metrics.record_job_item(JOB_NAME, "skipped")
                        continue
                    except DisplexError as e:
                        logger.warning(
                            "request_tier_failed", error=str(e), error_type=type(e).__name__
                        )
                        metrics.record_error(type(e).__name__, JOB_NAME)
                        report.failed += 1
                        metrics.record_job_item(JOB_NAME, "failed")
                        continue

                report.succeeded += 1
                metrics.record_job_item(JOB_NAME, "applied")

        report.completed = not report.interrupted
        duration = time.perf_counter() - start_time
        metrics.record_job_run(JOB_NAME, report.completed, duration)
        logger.info(
            "requests_upgrade_finished",
            processed=report.processed,
            succeeded=report.succeeded,
            skipped=report.skipped,
            failed=report.failed,
            duration_seconds=round(duration, 3),
        )
        return report
