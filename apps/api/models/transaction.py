"""
Modelo: transactions: solicitudes de depósito/retiro y su ciclo de revisión.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow

TRANSACTION_KINDS = ("deposit", "withdrawal")
TRANSACTION_STATUSES = ("pending", "approved", "rejected")
TERMINAL_STATUSES = frozenset({"approved", "rejected"})
# admin_adjustment: registro sintético de auditoría de un ajuste manual
TRANSACTION_SOURCES = ("user", "admin_adjustment")


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        sa.Index("ix_transactions_user_created", "user_id", "created_at"),
        sa.Index("ix_transactions_status_created", "status", "created_at"),
        sa.CheckConstraint("crypto_amount >= 0", name="ck_transactions_crypto_amount_non_negative"),
        sa.CheckConstraint("usd_value >= 0", name="ck_transactions_usd_value_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    # Referencia débil al sujeto del proveedor de auth (solo lookup)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    user_email: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    kind: Mapped[str] = mapped_column(
        sa.Enum(*TRANSACTION_KINDS, name="transaction_kind"),
        nullable=False,
    )
    asset: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    # NUMERIC(28,8): cantidades cripto con 8 decimales
    crypto_amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(28, 8), nullable=False)
    # NUMERIC(20,2): valor USD en el momento del envío
    usd_value: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.Enum(*TRANSACTION_STATUSES, name="transaction_status"),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    source: Mapped[str] = mapped_column(
        sa.Enum(*TRANSACTION_SOURCES, name="transaction_source"),
        nullable=False,
        default="user",
        server_default="user",
    )
    # Depósitos: referencia al justificante. Retiros: dirección de wallet destino.
    payment_proof_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )
