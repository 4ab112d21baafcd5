"""
Modelo: notifications: avisos in-app para el usuario.
"""

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow

NOTIFICATION_TYPES = ("deposit", "withdrawal", "adjustment", "swap")


class Notification(Base):
    __tablename__ = "notifications"

    __table_args__ = (
        sa.Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    type: Mapped[str] = mapped_column(
        sa.Enum(*NOTIFICATION_TYPES, name="notification_type"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    # "metadata" está reservado por la API declarativa
    extra: Mapped[dict | None] = mapped_column(
        "metadata",
        sa.JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )
    read: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.false())
    created_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )
