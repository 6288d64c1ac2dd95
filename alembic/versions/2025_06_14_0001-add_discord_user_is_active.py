"""Add is_active to discord_user so the sync job can skip dead identities.

Revision ID: 2025_06_14_0001
Revises: 2025_06_01_0000
Create Date: 2025-06-14

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2025_06_14_0001"
down_revision: str | None = "2025_06_01_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add is_active column, default true for existing identities."""
    with op.batch_alter_table("discord_user") as batch_op:
        batch_op.add_column(
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true())
        )
    op.create_index("idx_discord_user_is_active", "discord_user", ["is_active"])


def downgrade() -> None:
    """Remove is_active column."""
    op.drop_index("idx_discord_user_is_active", table_name="discord_user")
    with op.batch_alter_table("discord_user") as batch_op:
        batch_op.drop_column("is_active")
