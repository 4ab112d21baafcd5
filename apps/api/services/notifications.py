"""
Emisor de notificaciones: fila in-app + email opcional (Resend).

Reglas:
- Se invoca DESPUÉS del commit de la operación que notifica.
- Fire-and-forget: un fallo al notificar se loguea y NUNCA deshace
  una aprobación ya confirmada.
"""

import uuid
from decimal import Decimal
from typing import Any

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFound
from models.notification import Notification
from models.transaction import Transaction

logger = structlog.get_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"


# ---------------------------------------------------------------------------
# Textos
# ---------------------------------------------------------------------------


def _fmt_usd(value: Decimal) -> str:
    return f"${value:,.2f}"


def _fmt_crypto(value: Decimal, asset: str) -> str:
    return f"{value:.8f} {asset}"


def _short_wallet(address: str | None) -> str:
    if not address:
        return "-"
    if len(address) <= 16:
        return address
    return f"{address[:8]}...{address[-8:]}"


def submitted_message(tx: Transaction) -> tuple[str, str]:
    if tx.kind == "deposit":
        return (
            "Deposit Request Submitted",
            f"Your deposit of {_fmt_usd(tx.usd_value)} ({_fmt_crypto(tx.crypto_amount, tx.asset)}) "
            f"has been submitted and is pending approval.",
        )
    return (
        "Withdrawal Request Submitted",
        f"Your withdrawal of {_fmt_crypto(tx.crypto_amount, tx.asset)} to "
        f"{_short_wallet(tx.payment_proof_ref)} is pending approval.",
    )


def approved_message(tx: Transaction) -> tuple[str, str]:
    if tx.kind == "deposit":
        return (
            "Deposit Approved",
            f"Your deposit of {_fmt_usd(tx.usd_value)} ({_fmt_crypto(tx.crypto_amount, tx.asset)}) "
            f"has been approved and added to your balance.",
        )
    return (
        "Withdrawal Approved",
        f"Your withdrawal of {_fmt_crypto(tx.crypto_amount, tx.asset)} to "
        f"{_short_wallet(tx.payment_proof_ref)} has been approved and is being processed.",
    )


def rejected_message(tx: Transaction) -> tuple[str, str]:
    label = "Deposit" if tx.kind == "deposit" else "Withdrawal"
    message = (
        f"Your {label.lower()} of {_fmt_usd(tx.usd_value)} "
        f"({_fmt_crypto(tx.crypto_amount, tx.asset)}) has been rejected."
    )
    if tx.admin_notes:
        message += f" Reason: {tx.admin_notes}"
    return f"{label} Rejected", message


def adjustment_message(
    adjustment_type: str,
    asset: str,
    usd_amount: Decimal,
    crypto_amount: Decimal,
) -> tuple[str, str]:
    if adjustment_type == "add":
        return (
            f"Profit Added - {asset}",
            f"+{_fmt_usd(usd_amount)} ({_fmt_crypto(crypto_amount, asset)}) has been added to your balance.",
        )
    return (
        f"Loss Deducted - {asset}",
        f"-{_fmt_usd(usd_amount)} ({_fmt_crypto(crypto_amount, asset)}) has been deducted from your balance.",
    )


def swap_message(from_asset: str, from_amount: Decimal, to_asset: str, to_amount: Decimal) -> tuple[str, str]:
    return (
        "Swap Completed Successfully",
        f"Swapped {_fmt_crypto(from_amount, from_asset)} → {_fmt_crypto(to_amount, to_asset)}",
    )


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


class ResendEmailSink:
    """Envío de emails transaccionales vía la API HTTP de Resend."""

    def __init__(self, api_key: str, sender: str, http_client: httpx.AsyncClient | None = None) -> None:
        self._api_key = api_key
        self._sender = sender
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def send(self, to: str, subject: str, text: str) -> None:
        resp = await self._client.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={"from": self._sender, "to": [to], "subject": subject, "text": text},
        )
        resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Emisor
# ---------------------------------------------------------------------------


class NotificationEmitter:
    def __init__(self, db: AsyncSession, email_sink: ResendEmailSink | None = None) -> None:
        self.db = db
        self.email_sink = email_sink

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        email: str | None = None,
    ) -> Notification | None:
        """
        Persiste la notificación en su propia transacción.
        Devuelve None (y loguea) si no se pudo guardar.
        """
        log = logger.bind(user_id=user_id, type=type)
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            extra=metadata,
        )
        try:
            self.db.add(notification)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            log.warning("notification.persist_failed", error=str(exc))
            return None

        if email and self.email_sink is not None:
            try:
                await self.email_sink.send(email, title, message)
            except httpx.HTTPError as exc:
                log.warning("notification.email_failed", error=str(exc))

        log.info("notification.sent", notification_id=str(notification.id))
        return notification

    async def notify_transaction(self, tx: Transaction, title: str, message: str) -> Notification | None:
        return await self.notify(
            user_id=tx.user_id,
            type=tx.kind,
            title=title,
            message=message,
            metadata={
                "transaction_id": str(tx.id),
                "status": tx.status,
                "asset": tx.asset,
                "crypto_amount": str(tx.crypto_amount),
                "usd_value": str(tx.usd_value),
            },
            email=tx.user_email,
        )

    async def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        q = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            q = q.where(Notification.read.is_(False))
        q = q.order_by(Notification.created_at.desc()).limit(limit)
        result = await self.db.execute(q)
        return list(result.scalars().all())

    async def mark_read(self, user_id: str, notification_id: uuid.UUID) -> None:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(read=True)
        )
        if result.rowcount == 0:
            raise NotFound(f"Notificación {notification_id} no encontrada")
        await self.db.commit()
