"""create admin_balance_adjustments and swap_transactions tables

Revision ID: 004_create_adjustments_and_swaps
Revises: 003_create_notifications
Create Date: 2026-10-19 00:03:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum

revision: str = "004_create_adjustments_and_swaps"
down_revision: Union[str, None] = "003_create_notifications"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_adjustment_type = PgEnum("add", "subtract", name="adjustment_type", create_type=False)


def upgrade() -> None:
    op.execute(
        "DO $$ BEGIN "
        "CREATE TYPE adjustment_type AS ENUM ('add', 'subtract'); "
        "EXCEPTION WHEN duplicate_object THEN NULL; "
        "END $$;"
    )

    op.create_table(
        "admin_balance_adjustments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("asset", sa.String(10), nullable=False),
        sa.Column("adjustment_type", _adjustment_type, nullable=False),
        sa.Column("usd_amount", sa.NUMERIC(20, 2), nullable=False),
        sa.Column("crypto_amount", sa.NUMERIC(28, 8), nullable=False),
        # Precio de mercado usado en la conversión
        sa.Column("price_usd", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("admin_id", sa.String(64), nullable=False),
        sa.Column("transaction_id", sa.UUID(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_admin_balance_adjustments_user_asset",
        "admin_balance_adjustments",
        ["user_id", "asset"],
    )

    op.create_table(
        "swap_transactions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("from_asset", sa.String(10), nullable=False),
        sa.Column("to_asset", sa.String(10), nullable=False),
        sa.Column("from_amount", sa.NUMERIC(28, 8), nullable=False),
        sa.Column("to_amount", sa.NUMERIC(28, 8), nullable=False),
        sa.Column("from_price", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("to_price", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("value_usd", sa.NUMERIC(20, 2), nullable=False),
        sa.Column("exchange_rate", sa.NUMERIC(28, 8), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_swap_transactions_user_created",
        "swap_transactions",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_swap_transactions_user_created", table_name="swap_transactions")
    op.drop_table("swap_transactions")
    op.drop_index("ix_admin_balance_adjustments_user_asset", table_name="admin_balance_adjustments")
    op.drop_table("admin_balance_adjustments")
    op.execute("DROP TYPE IF EXISTS adjustment_type;")
