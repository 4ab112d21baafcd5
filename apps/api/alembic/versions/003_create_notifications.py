"""create notifications table

Revision ID: 003_create_notifications
Revises: 002_create_user_balances
Create Date: 2026-10-19 00:02:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum, JSONB

revision: str = "003_create_notifications"
down_revision: Union[str, None] = "002_create_user_balances"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOTIFICATION_TYPES = ("deposit", "withdrawal", "adjustment", "swap")

_notification_type = PgEnum(*NOTIFICATION_TYPES, name="notification_type", create_type=False)


def upgrade() -> None:
    values = ", ".join(f"'{v}'" for v in NOTIFICATION_TYPES)
    op.execute(
        f"DO $$ BEGIN "
        f"CREATE TYPE notification_type AS ENUM ({values}); "
        f"EXCEPTION WHEN duplicate_object THEN NULL; "
        f"END $$;"
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("type", _notification_type, nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.execute("DROP TYPE IF EXISTS notification_type;")
