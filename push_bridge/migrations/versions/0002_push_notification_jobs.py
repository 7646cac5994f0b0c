"""Add push notification jobs table

Revision ID: 0002_push_notification_jobs
Revises: 0001_push_subscriptions
Create Date: 2026-10-02 09:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0002_push_notification_jobs"
down_revision: Union[str, None] = "0001_push_subscriptions"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "push_notification_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("unread", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_push_notification_jobs_user_id", "push_notification_jobs", ["user_id"], unique=False)
    op.create_index("ix_push_notification_jobs_status", "push_notification_jobs", ["status"], unique=False)
    op.create_index(
        "ix_push_notification_jobs_scheduled_at_utc",
        "push_notification_jobs",
        ["scheduled_at_utc"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_push_notification_jobs_scheduled_at_utc", table_name="push_notification_jobs")
    op.drop_index("ix_push_notification_jobs_status", table_name="push_notification_jobs")
    op.drop_index("ix_push_notification_jobs_user_id", table_name="push_notification_jobs")
    op.drop_table("push_notification_jobs")
