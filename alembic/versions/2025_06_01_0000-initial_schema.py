"""Initial schema: discord users, plex users and discord tokens.

Revision ID: 2025_06_01_0000
Revises:
Create Date: 2025-06-01

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2025_06_01_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create identity, linked account and token tables."""
    op.create_table(
        "discord_user",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "plex_user",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("is_subscriber", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "discord_user_id",
            sa.String(64),
            sa.ForeignKey("discord_user.id", ondelete="CASCADE", onupdate="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_plex_user_discord_user_id", "plex_user", ["discord_user_id"])

    op.create_table(
        "discord_token",
        sa.Column("access_token", sa.Text, primary_key=True),
        sa.Column("refresh_token", sa.Text, nullable=False),
        sa.Column("scopes", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "discord_user_id",
            sa.String(64),
            sa.ForeignKey("discord_user.id", ondelete="CASCADE", onupdate="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_discord_token_expires_at", "discord_token", ["expires_at"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_discord_token_expires_at", table_name="discord_token")
    op.drop_table("discord_token")
    op.drop_index("idx_plex_user_discord_user_id", table_name="plex_user")
    op.drop_table("plex_user")
    op.drop_table("discord_user")
