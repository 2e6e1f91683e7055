"""Add job_schedule table for per-user invoice check schedules.

Revision ID: 001_job_schedule
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_job_schedule"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create job_schedule table."""
    op.create_table(
        "job_schedule",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("cron_expression", sa.String(255), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        # Timestamps
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_job_schedule"),
    )
    # Index for per-user lookups
    op.create_index("ix_job_schedule_user_id", "job_schedule", ["user_id"])


def downgrade() -> None:
    """Drop job_schedule table."""
    op.drop_index("ix_job_schedule_user_id", table_name="job_schedule")
    op.drop_table("job_schedule")
