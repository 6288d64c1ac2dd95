"""
Token Store - persisted OAuth2 token records.

Rows are keyed by access token and never mutated after insert except for
``status``. Creation is an insert-or-ignore so replaying the same provider
response is harmless.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from structlog import get_logger

from displex.db.models import DiscordToken
from displex.exceptions import InvalidTokenTransitionError, TokenNotFoundError
from displex.models.domain import (
    TokenEvent,
    TokenStatus,
    check_status_change,
    token_fingerprint,
    transition,
)
from displex.observability.metrics import metrics

logger = get_logger(__name__)


class DiscordTokenStore:
    """CRUD over the discord_token table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _insert(self) -> Any:
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            return postgresql.insert(DiscordToken)
        return sqlite.insert(DiscordToken)

    async def create(
        self,
        access_token: str,
        refresh_token: str,
        scopes: str,
        expires_at: datetime,
        discord_user_id: str,
        commit: bool = True,
    ) -> str:
        """
        Insert a token record, ignoring a duplicate access token.

        Returns the access token, which is the record's identity whether or not
        a row was written. An existing row is never modified.
        """
        stmt = (
            self._insert()
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                scopes=scopes,
                expires_at=expires_at,
                discord_user_id=discord_user_id,
                status=TokenStatus.ACTIVE,
            )
            .on_conflict_do_nothing(index_elements=["access_token"])
        )
        result = await self.session.execute(stmt)
        if commit:
            await self.session.commit()

        if result.rowcount == 0:
            logger.info(
                "token_insert_ignored",
                access_token=token_fingerprint(access_token),
                discord_user_id=discord_user_id,
            )
        else:
            logger.info(
                "token_created",
                access_token=token_fingerprint(access_token),
                discord_user_id=discord_user_id,
                expires_at=expires_at.isoformat(),
            )
        return access_token

    async def get(self, access_token: str) -> DiscordToken | None:
        stmt = select(DiscordToken).where(DiscordToken.access_token == access_token)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> list[DiscordToken]:
        """All Active tokens, soonest expiry first."""
        stmt = (
            select(DiscordToken)
            .where(DiscordToken.status == TokenStatus.ACTIVE)
            .order_by(DiscordToken.expires_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list(
        self,
        discord_user_id: str | None = None,
        before_expires_at: datetime | None = None,
        status: TokenStatus | None = None,
    ) -> list[DiscordToken]:
        """Tokens matching every given filter, newest expiry first."""
        stmt = select(DiscordToken)
        if discord_user_id is not None:
            stmt = stmt.where(DiscordToken.discord_user_id == discord_user_id)
        if before_expires_at is not None:
            stmt = stmt.where(DiscordToken.expires_at < before_expires_at)
        if status is not None:
            stmt = stmt.where(DiscordToken.status == status)
        stmt = stmt.order_by(DiscordToken.expires_at.desc())

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def latest_token(self, discord_user_id: str) -> DiscordToken | None:
        """The Active token with the greatest expires_at for an identity."""
        stmt = (
            select(DiscordToken)
            .where(
                DiscordToken.discord_user_id == discord_user_id,
                DiscordToken.status == TokenStatus.ACTIVE,
            )
            .order_by(DiscordToken.expires_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_status(
        self, access_token: str, status: TokenStatus, commit: bool = True
    ) -> DiscordToken:
        """
        Assign a status directly.

        Raises:
            TokenNotFoundError: No row for ``access_token``
            InvalidTokenTransitionError: The row is already terminal
        """
        token = await self.get(access_token)
        if token is None:
            raise TokenNotFoundError(token_fingerprint(access_token))

        check_status_change(token.status, status)
        if token.status is not status:
            token.status = status
            metrics.record_token_transition(status.name.lower())
        if commit:
            await self.session.commit()
        return token

    async def apply_event(
        self, token: DiscordToken, event: TokenEvent, commit: bool = True
    ) -> TokenStatus:
        """
        Move ``token`` through the state machine and persist the new status.

        The UPDATE only matches while the row still holds the status ``token``
        was loaded with, so a concurrent writer that got there first wins.

        Raises:
            InvalidTokenTransitionError: The event is not allowed from the
                current status, or the row changed since it was loaded
        """
        current = token.status
        new_status = transition(current, event)
        stmt = (
            update(DiscordToken)
            .where(
                DiscordToken.access_token == token.access_token,
                DiscordToken.status == current,
            )
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "token_status_conflict",
                access_token=token_fingerprint(token.access_token),
                expected=current.name,
                token_event=event.value,
            )
            raise InvalidTokenTransitionError(current.name, event.value)

        set_committed_value(token, "status", new_status)
        if commit:
            await self.session.commit()

        metrics.record_token_transition(new_status.name.lower())
        logger.info(
            "token_status_changed",
            access_token=token_fingerprint(token.access_token),
            discord_user_id=token.discord_user_id,
            token_event=event.value,
            status=new_status.name,
        )
        return new_status

    async def current_status(self, access_token: str) -> TokenStatus | None:
        """Status as stored right now, bypassing any row already in the session."""
        stmt = select(DiscordToken.status).where(DiscordToken.access_token == access_token)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, access_token: str) -> bool:
        """Delete a token record. Returns False when nothing was deleted."""
        stmt = delete(DiscordToken).where(DiscordToken.access_token == access_token)
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount > 0

    async def purge_expired(self, older_than: datetime) -> int:
        """
        Delete non-Active tokens whose expires_at is before ``older_than``.

        Active rows are left for the maintenance pass to expire first.
        """
        stmt = delete(DiscordToken).where(
            DiscordToken.expires_at < older_than,
            DiscordToken.status != TokenStatus.ACTIVE,
        )
        result = await self.session.execute(stmt)
        await self.session.commit()

        purged = result.rowcount or 0
        if purged:
            metrics.tokens_purged_total.inc(purged)
            logger.info("tokens_purged", count=purged, older_than=older_than.isoformat())
        return purged
