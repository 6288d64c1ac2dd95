"""
Token Lifecycle Manager.

Owns the per-token state machine. A maintenance pass walks every Active
token and either leaves it, expires it, or refreshes it:

    Active --(expires_at <= now)------------------------> Expired
    Active --(expires_at < now + window, refresh ok)----> Renewed (+ new Active row)
    Active --(refresh rejected with invalid_grant)------> Revoked
    Active --(refresh failed transiently)---------------> unchanged

Refresh never mutates the old row's token values; it inserts a successor
row and moves the old one to Renewed in the same commit.
"""

import asyncio
import time
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from displex.config import Settings
from displex.db.models import DiscordToken, utc_now
from displex.exceptions import (
    DisplexError,
    InvalidGrantError,
    InvalidTokenTransitionError,
    TokenNotFoundError,
    UpstreamError,
)
from displex.models.domain import (
    PassReport,
    TokenAction,
    TokenEvent,
    TokenStatus,
    plan_maintenance,
    token_fingerprint,
)
from displex.observability.logging import log_context
from displex.observability.metrics import metrics
from displex.observability.tracing import trace_operation
from displex.services.discord_oauth import DiscordOAuth2Client
from displex.services.token_store import DiscordTokenStore

logger = get_logger(__name__)

JOB_NAME = "token_maintenance"


class TokenLifecycleManager:
    """Refresh, expire and revoke stored tokens."""

    def __init__(
        self,
        store: DiscordTokenStore,
        oauth_client: DiscordOAuth2Client,
        settings: Settings,
    ) -> None:
        self.store = store
        self.oauth_client = oauth_client
        self.settings = settings

    async def latest_token(self, discord_user_id: str) -> DiscordToken | None:
        """Current token for an identity. Always re-read; never use a cached row."""
        return await self.store.latest_token(discord_user_id)

    async def refresh(self, token: DiscordToken, now: datetime | None = None) -> DiscordToken:
        """
        Exchange ``token``'s refresh token and store the successor.

        Returns the new Active row. When another writer already moved
        ``token`` on, its Active successor is returned instead.

        Raises:
            InvalidGrantError: Provider rejected the grant; the row is now Revoked
            NetworkError, UpstreamAuthError: Transient; the row is unchanged
        """
        now = now or utc_now()
        fingerprint = token_fingerprint(token.access_token)
        discord_user_id = token.discord_user_id

        try:
            response = await self.oauth_client.refresh(token.refresh_token)
        except InvalidGrantError:
            # A concurrent refresh consumed the grant; revoking would kill its successor
            if await self.store.current_status(token.access_token) is not TokenStatus.ACTIVE:
                return await self._superseded(fingerprint, discord_user_id)
            await self.oauth_client.revoke(token.refresh_token)
            try:
                await self.store.apply_event(token, TokenEvent.GRANT_INVALID)
            except InvalidTokenTransitionError:
                await self.store.session.rollback()
                return await self._superseded(fingerprint, discord_user_id)
            metrics.record_token_refresh("invalid_grant")
            logger.warning(
                "token_revoked",
                access_token=fingerprint,
                discord_user_id=discord_user_id,
            )
            raise
        except UpstreamError as e:
            metrics.record_token_refresh("transient_error")
            logger.warning(
                "token_refresh_deferred",
                access_token=fingerprint,
                discord_user_id=discord_user_id,
                error=str(e),
            )
            raise

        if response.access_token == token.access_token:
            # Nothing new to store, so the row stays Active
            metrics.record_token_refresh("unchanged")
            logger.warning("token_refresh_returned_same_token", access_token=fingerprint)
            return token

        expires_at = response.expires_at(now, self.settings.token_refresh_fallback_seconds)
        await self.store.create(
            access_token=response.access_token,
            refresh_token=response.refresh_token or token.refresh_token,
            scopes=response.scope_string or token.scopes,
            expires_at=expires_at,
            discord_user_id=token.discord_user_id,
            commit=False,
        )
        try:
            await self.store.apply_event(token, TokenEvent.REFRESHED, commit=False)
        except InvalidTokenTransitionError:
            # Lapsed rows are terminal already but the new grant is still good
            if await self.store.current_status(token.access_token) is not TokenStatus.EXPIRED:
                await self.store.session.rollback()
                return await self._superseded(fingerprint, discord_user_id)
        await self.store.session.commit()

        metrics.record_token_refresh("renewed")
        logger.info(
            "token_renewed",
            access_token=fingerprint,
            successor=token_fingerprint(response.access_token),
            discord_user_id=token.discord_user_id,
            expires_at=expires_at.isoformat(),
        )

        successor = await self.store.get(response.access_token)
        if successor is None:
            raise TokenNotFoundError(token_fingerprint(response.access_token))
        return successor

    async def _superseded(self, fingerprint: str, discord_user_id: str) -> DiscordToken:
        metrics.record_token_refresh("superseded")
        logger.info(
            "token_refresh_superseded", access_token=fingerprint, discord_user_id=discord_user_id
        )
        successor = await self.store.latest_token(discord_user_id)
        if successor is None:
            raise InvalidGrantError("grant was consumed and no active successor exists")
        return successor

    async def run_maintenance(
        self,
        now: datetime | None = None,
        shutdown: asyncio.Event | None = None,
    ) -> PassReport:
        """
        One maintenance pass over all Active tokens, then the retention purge.

        Per-token failures are logged and counted; they never abort the pass.
        A set ``shutdown`` event stops the pass between tokens.
        """
        now = now or utc_now()
        report = PassReport(job=JOB_NAME)
        start_time = time.perf_counter()

        with trace_operation(JOB_NAME) as span:
            access_tokens = [token.access_token for token in await self.store.list_active()]
            logger.info("token_maintenance_started", tokens=len(access_tokens))

            for access_token in access_tokens:
                if shutdown is not None and shutdown.is_set():
                    report.interrupted = True
                    logger.info("token_maintenance_interrupted", processed=report.processed)
                    break

                # A rollback on an earlier item expires every loaded row
                token = await self.store.get(access_token)
                if token is None or token.status is not TokenStatus.ACTIVE:
                    continue

                report.processed += 1
                with log_context(
                    discord_user_id=token.discord_user_id,
                    access_token=token_fingerprint(access_token),
                ):
                    await self._maintain_one(token, now, report)

            if not report.interrupted:
                report.purged = await self.store.purge_expired(now - self.settings.retention)

            span.set_attribute("processed", report.processed)
            span.set_attribute("renewed", report.renewed)
            span.set_attribute("failed", report.failed)

        report.completed = not report.interrupted
        duration = time.perf_counter() - start_time
        metrics.record_job_run(JOB_NAME, report.completed, duration)
        logger.info(
            "token_maintenance_finished",
            processed=report.processed,
            renewed=report.renewed,
            expired=report.expired,
            revoked=report.revoked,
            failed=report.failed,
            purged=report.purged,
            duration_seconds=round(duration, 3),
        )
        return report

    async def _maintain_one(self, token: DiscordToken, now: datetime, report: PassReport) -> None:
        access_token = token.access_token
        action = plan_maintenance(token.expires_at, now, self.settings.refresh_window)
        try:
            if action is TokenAction.LEAVE:
                report.skipped += 1
                metrics.record_job_item(JOB_NAME, action.value)
                return
            if action is TokenAction.EXPIRE:
                await self.store.apply_event(token, TokenEvent.LAPSED)
                report.expired += 1
            elif action is TokenAction.REFRESH:
                successor = await self.refresh(token, now)
                if successor.access_token != access_token:
                    report.renewed += 1
            report.succeeded += 1
            metrics.record_job_item(JOB_NAME, action.value)
        except InvalidGrantError:
            report.revoked += 1
            report.succeeded += 1
            metrics.record_job_item(JOB_NAME, "revoked")
        except InvalidTokenTransitionError:
            # Another writer moved the row first
            await self.store.session.rollback()
            report.skipped += 1
            metrics.record_job_item(JOB_NAME, "conflict")
        except DisplexError as e:
            report.failed += 1
            metrics.record_job_item(JOB_NAME, "error")
            metrics.record_error(type(e).__name__, JOB_NAME)
        except SQLAlchemyError as e:
            await self.store.session.rollback()
            report.failed += 1
            metrics.record_job_item(JOB_NAME, "database_error")
            metrics.record_error(type(e).__name__, JOB_NAME)
            logger.error("token_maintenance_item_failed", error=str(e))
        except Exception as e:
            await self.store.session.rollback()
            report.failed += 1
            metrics.record_job_item(JOB_NAME, "error")
            metrics.record_error(type(e).__name__, JOB_NAME)
            logger.exception("token_maintenance_item_crashed", error=str(e))
