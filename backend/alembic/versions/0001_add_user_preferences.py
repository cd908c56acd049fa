"""Add user_preferences table

Revision ID: 0001_add_user_preferences
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_add_user_preferences'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the per-user preference document table."""

    op.create_table(
        'user_preferences',
        sa.Column('user_id', sa.String(64), primary_key=True),

        # Preference document; subscription data lives under "subscription"
        sa.Column('prefs', sa.JSON, nullable=False, server_default=sa.text("'{}'")),

        # Optimistic concurrency token, bumped on every write
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    """Drop user_preferences table."""
    op.drop_table('user_preferences')
