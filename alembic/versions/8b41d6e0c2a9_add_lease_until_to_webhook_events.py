"""add lease_until to webhook_events

Revision ID: 8b41d6e0c2a9
Revises: 3f9c2a7d1b64
Create Date: 2026-10-18 10:04:27.531902

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8b41d6e0c2a9"
down_revision: str | Sequence[str] | None = "3f9c2a7d1b64"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add the claim lease column to webhook_events."""
    op.add_column("webhook_events", sa.Column("lease_until", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    """Remove the claim lease column from webhook_events."""
    op.drop_column("webhook_events", "lease_until")
