"""
Modelo: admin_balance_adjustments: auditoría de ajustes manuales de balance.
El cálculo de "invertido" del portafolio descuenta estas cantidades.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow

ADJUSTMENT_TYPES = ("add", "subtract")


class AdminBalanceAdjustment(Base):
    __tablename__ = "admin_balance_adjustments"

    __table_args__ = (
        sa.Index("ix_admin_balance_adjustments_user_asset", "user_id", "asset"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    asset: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    adjustment_type: Mapped[str] = mapped_column(
        sa.Enum(*ADJUSTMENT_TYPES, name="adjustment_type"),
        nullable=False,
    )
    usd_amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 2), nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(28, 8), nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    admin_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )
