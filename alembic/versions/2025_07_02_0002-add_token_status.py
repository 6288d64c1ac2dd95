"""Add integer status to discord_token (0=active, 1=revoked, 2=renewed, 3=expired).

Revision ID: 2025_07_02_0002
Revises: 2025_06_14_0001
Create Date: 2025-07-02

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2025_07_02_0002"
down_revision: str | None = "2025_06_14_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add status column; existing rows start out active."""
    with op.batch_alter_table("discord_token") as batch_op:
        batch_op.add_column(
            sa.Column("status", sa.Integer, nullable=False, server_default=sa.text("0"))
        )
    op.create_index(
        "idx_discord_token_user_status_expires",
        "discord_token",
        ["discord_user_id", "status", "expires_at"],
    )


def downgrade() -> None:
    """Remove status column."""
    op.drop_index("idx_discord_token_user_status_expires", table_name="discord_token")
    with op.batch_alter_table("discord_token") as batch_op:
        batch_op.drop_column("status")
