"""Add push subscriptions table

Revision ID: 0001_push_subscriptions
Revises:
Create Date: 2026-09-28 10:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_push_subscriptions"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


platform_enum = sa.Enum("IOS", "ANDROID", name="push_subscription_platform")
status_enum = sa.Enum("ENABLED", "DISABLED", name="push_subscription_status")


def upgrade() -> None:
    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("device_token", sa.String(length=1024), nullable=False),
        sa.Column("application_name", sa.String(length=255), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("endpoint_arn", sa.String(length=1024), nullable=False),
        sa.Column("status", status_enum, nullable=False, server_default=sa.text("'ENABLED'")),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
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
    op.create_index(
        "ix_push_subscriptions_device_token",
        "push_subscriptions",
        ["device_token"],
        unique=True,
    )
    op.create_index(
        "ix_push_subscriptions_user_id",
        "push_subscriptions",
        ["user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_push_subscriptions_user_id", table_name="push_subscriptions")
    op.drop_index("ix_push_subscriptions_device_token", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    status_enum.drop(op.get_bind(), checkfirst=True)
    platform_enum.drop(op.get_bind(), checkfirst=True)
