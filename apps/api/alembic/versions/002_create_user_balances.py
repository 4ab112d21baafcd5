"""create user_balances table

Revision ID: 002_create_user_balances
Revises: 001_create_transactions
Create Date: 2026-10-19 00:01:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_create_user_balances"
down_revision: Union[str, None] = "001_create_transactions"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_balances",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("asset", sa.String(10), nullable=False),
        sa.Column("amount", sa.NUMERIC(28, 8), nullable=False),
        # NUMERIC(20,8): coste medio ponderado en USD
        sa.Column("average_buy_price", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        # Objetivo del ON CONFLICT del upsert del ledger
        sa.UniqueConstraint("user_id", "asset", name="uq_user_balances_user_asset"),
        sa.CheckConstraint("amount >= 0", name="ck_user_balances_amount_non_negative"),
        sa.CheckConstraint("average_buy_price >= 0", name="ck_user_balances_avg_price_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("user_balances")
