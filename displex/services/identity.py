"""
Identity Store - discord identities and their linked Plex accounts.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from structlog import get_logger

from displex.db.models import DiscordUser, PlexUser, utc_now
from displex.exceptions import AccountLinkError, IdentityNotFoundError, UpstreamAuthError
from displex.services.discord import DiscordClient
from displex.services.discord_oauth import DiscordOAuth2Client
from displex.services.token_store import DiscordTokenStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class LinkRequest:
    """Everything produced by a completed OAuth callback for one user."""

    discord_user_id: str
    discord_username: str
    plex_user_id: str
    plex_username: str
    is_subscriber: bool
    access_token: str
    refresh_token: str
    scopes: str
    expires_at: datetime


class DiscordUserStore:
    """Reads and status changes for discord identities."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, discord_user_id: str) -> DiscordUser | None:
        stmt = select(DiscordUser).where(DiscordUser.id == discord_user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[DiscordUser]:
        stmt = select(DiscordUser).order_by(DiscordUser.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_users_for_refresh(self) -> list[tuple[DiscordUser, PlexUser]]:
        """
        Active identities that have at least one linked account.

        Each identity is paired with its earliest linked account.
        """
        stmt = (
            select(DiscordUser)
            .where(DiscordUser.is_active.is_(True), DiscordUser.plex_users.any())
            .options(selectinload(DiscordUser.plex_users))
            .order_by(DiscordUser.created_at)
        )
        result = await self.session.execute(stmt)
        return [(user, user.plex_users[0]) for user in result.scalars().all()]

    async def deactivate(self, discord_user_id: str) -> DiscordUser:
        """Mark an identity inactive so batch jobs skip it."""
        return await self._set_active(discord_user_id, False)

    async def activate(self, discord_user_id: str) -> DiscordUser:
        return await self._set_active(discord_user_id, True)

    async def _set_active(self, discord_user_id: str, is_active: bool) -> DiscordUser:
        user = await self.get(discord_user_id)
        if user is None:
            raise IdentityNotFoundError(discord_user_id)

        user.is_active = is_active
        await self.session.commit()

        logger.info(
            "discord_user_activated" if is_active else "discord_user_deactivated",
            discord_user_id=discord_user_id,
        )
        return user

    async def delete(self, discord_user_id: str) -> bool:
        """Delete an identity; its tokens and linked accounts cascade."""
        stmt = delete(DiscordUser).where(DiscordUser.id == discord_user_id)
        result = await self.session.execute(stmt)
        await self.session.commit()

        deleted = result.rowcount > 0
        if deleted:
            logger.info("discord_user_deleted", discord_user_id=discord_user_id)
        return deleted


async def link_account(session: AsyncSession, request: LinkRequest) -> str:
    """
    Create or update the identity, its linked account and its first token.

    All three writes commit together or not at all. Re-linking an identity
    reactivates it. Returns the stored access token.

    Raises:
        AccountLinkError: Any database failure; nothing is persisted
    """
    try:
        await session.merge(
            DiscordUser(
                id=request.discord_user_id,
                username=request.discord_username,
                is_active=True,
            )
        )
        await session.merge(
            PlexUser(
                id=request.plex_user_id,
                username=request.plex_username,
                is_subscriber=request.is_subscriber,
                discord_user_id=request.discord_user_id,
            )
        )
        await session.flush()

        access_token = await DiscordTokenStore(session).create(
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            scopes=request.scopes,
            expires_at=request.expires_at,
            discord_user_id=request.discord_user_id,
            commit=False,
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(
            "account_link_failed",
            discord_user_id=request.discord_user_id,
            plex_user_id=request.plex_user_id,
            error=str(e),
        )
        raise AccountLinkError(str(e)) from e

    logger.info(
        "account_linked",
        discord_user_id=request.discord_user_id,
        plex_user_id=request.plex_user_id,
        is_subscriber=request.is_subscriber,
    )
    return access_token


async def link_from_authorization_code(
    session: AsyncSession,
    oauth_client: DiscordOAuth2Client,
    discord_client: DiscordClient,
    code: str,
    redirect_uri: str,
    plex_user_id: str,
    plex_username: str,
    is_subscriber: bool,
    fallback_lifetime_seconds: int,
    now: datetime | None = None,
) -> str:
    """
    Finish a Discord authorization for an already identified Plex account.

    Exchanges ``code``, resolves the Discord user behind the new token and
    links both accounts. Returns the stored access token.

    Raises:
        UpstreamAuthError, NetworkError: Exchange or identity fetch failed
        AccountLinkError: The link could not be persisted
    """
    now = now or utc_now()
    token = await oauth_client.exchange_code(code, redirect_uri)
    if not token.refresh_token:
        raise UpstreamAuthError("discord_oauth", 200, "code exchange returned no refresh_token")
    discord_user = await discord_client.get_current_user(token.access_token)

    return await link_account(
        session,
        LinkRequest(
            discord_user_id=discord_user.id,
            discord_username=discord_user.username,
            plex_user_id=plex_user_id,
            plex_username=plex_username,
            is_subscriber=is_subscriber,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            scopes=token.scope_string or oauth_client.scope_string,
            expires_at=token.expires_at(now, fallback_lifetime_seconds),
        ),
    )
