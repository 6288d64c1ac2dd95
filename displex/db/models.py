"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. Timestamps are always returned as
timezone-aware UTC, including on SQLite which stores them naive.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from displex.models.domain import TokenStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime that always round-trips as an aware UTC datetime."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class TokenStatusType(TypeDecorator[TokenStatus]):
    """Stores TokenStatus as its integer value (0=Active .. 3=Expired)."""

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> int | None:
        if value is None:
            return None
        return int(TokenStatus(value))

    def process_result_value(self, value: Any, dialect: Dialect) -> TokenStatus | None:
        if value is None:
            return None
        return TokenStatus(value)


class DiscordUser(Base):
    """
    ORM model for discord_user table.

    The Discord-side identity metadata is synchronized for.
    """

    __tablename__ = "discord_user"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    plex_users: Mapped[list["PlexUser"]] = relationship(
        back_populates="discord_user",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PlexUser.created_at",
    )
    tokens: Mapped[list["DiscordToken"]] = relationship(
        back_populates="discord_user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_discord_user_is_active", "is_active"),)


class PlexUser(Base):
    """
    ORM model for plex_user table.

    The Plex account linked to a discord identity.
    """

    __tablename__ = "plex_user"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    is_subscriber: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    discord_user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("discord_user.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    discord_user: Mapped[DiscordUser] = relationship(back_populates="plex_users")

    __table_args__ = (Index("idx_plex_user_discord_user_id", "discord_user_id"),)


class DiscordToken(Base):
    """
    ORM model for discord_token table.

    Rows are immutable once inserted except for ``status``. A refresh always
    inserts a successor row and moves the old one to RENEWED.
    """

    __tablename__ = "discord_token"

    access_token: Mapped[str] = mapped_column(Text, primary_key=True)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    scopes: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    discord_user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("discord_user.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    status: Mapped[TokenStatus] = mapped_column(
        TokenStatusType, nullable=False, default=TokenStatus.ACTIVE
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    discord_user: Mapped[DiscordUser] = relationship(back_populates="tokens")

    __table_args__ = (
        Index("idx_discord_token_user_status_expires", "discord_user_id", "status", "expires_at"),
        Index("idx_discord_token_expires_at", "expires_at"),
    )
