"""create transactions table

Revision ID: 001_create_transactions
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum

revision: str = "001_create_transactions"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    "transaction_kind": ("deposit", "withdrawal"),
    "transaction_status": ("pending", "approved", "rejected"),
    "transaction_source": ("user", "admin_adjustment"),
}


def _enum(name: str) -> PgEnum:
    return PgEnum(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # Crear los ENUM de forma idempotente
    for name, labels in ENUMS.items():
        values = ", ".join(f"'{v}'" for v in labels)
        op.execute(
            f"DO $$ BEGIN "
            f"CREATE TYPE {name} AS ENUM ({values}); "
            f"EXCEPTION WHEN duplicate_object THEN NULL; "
            f"END $$;"
        )

    op.create_table(
        "transactions",
        sa.Column("id", sa.UUID(), nullable=False),
        # user_id: subject del proveedor de auth (referencia débil, sin FK)
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("kind", _enum("transaction_kind"), nullable=False),
        sa.Column("asset", sa.String(10), nullable=False),
        # NUMERIC(28,8): cantidades cripto con 8 decimales
        sa.Column("crypto_amount", sa.NUMERIC(28, 8), nullable=False),
        # NUMERIC(20,2): valor USD
        sa.Column("usd_value", sa.NUMERIC(20, 2), nullable=False),
        sa.Column("status", _enum("transaction_status"), nullable=False, server_default="pending"),
        sa.Column("source", _enum("transaction_source"), nullable=False, server_default="user"),
        sa.Column("payment_proof_ref", sa.Text(), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.String(64), nullable=True),
        sa.Column("approved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("crypto_amount >= 0", name="ck_transactions_crypto_amount_non_negative"),
        sa.CheckConstraint("usd_value >= 0", name="ck_transactions_usd_value_non_negative"),
    )

    op.create_index("ix_transactions_user_created", "transactions", ["user_id", "created_at"])
    # Cola de revisión del admin: WHERE status = 'pending' ORDER BY created_at
    op.create_index("ix_transactions_status_created", "transactions", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_transactions_status_created", table_name="transactions")
    op.drop_index("ix_transactions_user_created", table_name="transactions")
    op.drop_table("transactions")
    for name in ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name};")
