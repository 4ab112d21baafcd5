"""
Modelo: swap_transactions: conversiones instantáneas entre activos del usuario.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class SwapTransaction(Base):
    __tablename__ = "swap_transactions"

    __table_args__ = (
        sa.Index("ix_swap_transactions_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    from_asset: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    to_asset: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    from_amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(28, 8), nullable=False)
    to_amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(28, 8), nullable=False)
    from_price: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    to_price: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    value_usd: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 2), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(sa.NUMERIC(28, 8), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(20), nullable=False, default="completed")
    created_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )
