"""
Modelo: user_balances: ledger por usuario y activo (cantidad + coste medio).
Solo services.ledger.BalanceLedger.upsert escribe amount/average_buy_price.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class BalanceEntry(Base):
    __tablename__ = "user_balances"

    __table_args__ = (
        sa.UniqueConstraint("user_id", "asset", name="uq_user_balances_user_asset"),
        sa.CheckConstraint("amount >= 0", name="ck_user_balances_amount_non_negative"),
        sa.CheckConstraint("average_buy_price >= 0", name="ck_user_balances_avg_price_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    asset: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(28, 8), nullable=False)
    # NUMERIC(20,8) para precios en USD
    average_buy_price: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )
