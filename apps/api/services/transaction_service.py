"""
Servicio de transacciones: alta de solicitudes y transiciones de estado.

Reglas:
- Toda solicitud nace en pending. Solo el ApprovalEngine la saca de pending.
- create valida en la frontera: campos, importes > 0, activo soportado,
  justificante (depósitos) o wallet destino + saldo suficiente (retiros).
- Depósitos: mínimo por clase de activo y recálculo de la conversión con el
  precio del oráculo (ConversionMismatch si el cliente usó un precio obsoleto).
"""

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    InsufficientBalance,
    NotFound,
    PriceUnavailable,
    ValidationFailed,
)
from core.security import AuthContext
from models.transaction import TRANSACTION_KINDS, TRANSACTION_STATUSES, Transaction
from services.approval_engine import ApprovalEngine, require_admin
from services.conversion import (
    CRYPTO_PRECISION,
    MIN_DEPOSIT_CRYPTO,
    MIN_DEPOSIT_USD,
    SUPPORTED_ASSETS,
    USD_PRECISION,
    check_conversion,
    crypto_from_usd,
    is_fiat,
    usd_from_crypto,
    validate_minimum,
)
from services.ledger import BalanceLedger
from services.notifications import NotificationEmitter, submitted_message
from services.price_oracle import PriceOracle

logger = structlog.get_logger(__name__)


@dataclass
class TransactionInput:
    user_id: str
    kind: str
    asset: str
    crypto_amount: Decimal
    usd_value: Decimal
    payment_proof_ref: str | None = None
    wallet_address: str | None = None
    payment_method: str | None = None
    user_email: str | None = None


class TransactionService:
    """
    Uso:
        service = TransactionService(db=session, engine=engine, notifier=notifier, oracle=oracle)
        tx = await service.submit_deposit(user, usd_amount=Decimal("1000"), asset="BTC", payment_proof_ref=url)
        tx = await service.transition(tx.id, "approved", actor=admin)
    """

    def __init__(
        self,
        db: AsyncSession,
        engine: ApprovalEngine | None = None,
        notifier: NotificationEmitter | None = None,
        oracle: PriceOracle | None = None,
        min_deposit_usd: Decimal = MIN_DEPOSIT_USD,
        min_deposit_crypto: Decimal = MIN_DEPOSIT_CRYPTO,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.oracle = oracle
        self.engine = engine or ApprovalEngine(db, notifier=notifier, oracle=oracle)
        self.ledger = BalanceLedger(db)
        self.min_deposit_usd = min_deposit_usd
        self.min_deposit_crypto = min_deposit_crypto

    # -----------------------------------------------------------------------
    # Alta
    # -----------------------------------------------------------------------

    async def create(self, data: TransactionInput) -> Transaction:
        if not data.user_id:
            raise ValidationFailed("user_id es obligatorio")
        if data.kind not in TRANSACTION_KINDS:
            raise ValidationFailed(f"Tipo inválido: {data.kind}", {"allowed": list(TRANSACTION_KINDS)})
        asset = (data.asset or "").upper()
        if asset not in SUPPORTED_ASSETS:
            raise ValidationFailed(f"Activo no soportado: {data.asset}", {"supported": sorted(SUPPORTED_ASSETS)})

        crypto_amount = Decimal(data.crypto_amount).quantize(CRYPTO_PRECISION, ROUND_HALF_UP)
        usd_value = Decimal(data.usd_value).quantize(USD_PRECISION, ROUND_HALF_UP)
        if crypto_amount <= Decimal("0"):
            raise ValidationFailed("crypto_amount debe ser > 0", {"crypto_amount": str(data.crypto_amount)})
        if usd_value <= Decimal("0"):
            raise ValidationFailed("usd_value debe ser > 0", {"usd_value": str(data.usd_value)})

        if data.kind == "deposit":
            reference = (data.payment_proof_ref or "").strip()
            if not reference:
                raise ValidationFailed("Los depósitos requieren justificante de pago")
        else:
            reference = (data.wallet_address or "").strip()
            if not reference:
                raise ValidationFailed("Los retiros requieren una dirección de wallet destino")
            entry = await self.ledger.get(data.user_id, asset)
            available = entry.amount if entry is not None else Decimal("0")
            if available < crypto_amount:
                raise InsufficientBalance(asset=asset, required=crypto_amount, available=available)

        tx = Transaction(
            id=uuid.uuid4(),
            user_id=data.user_id,
            user_email=data.user_email,
            kind=data.kind,
            asset=asset,
            crypto_amount=crypto_amount,
            usd_value=usd_value,
            status="pending",
            source="user",
            payment_proof_ref=reference,
            payment_method=data.payment_method,
        )
        self.db.add(tx)
        await self.db.commit()

        logger.info(
            "transaction.created",
            transaction_id=str(tx.id),
            user_id=tx.user_id,
            kind=tx.kind,
            asset=tx.asset,
            crypto_amount=str(tx.crypto_amount),
            usd_value=str(tx.usd_value),
        )
        if self.notifier is not None:
            await self.notifier.notify_transaction(tx, *submitted_message(tx))
        return tx

    async def submit_deposit(
        self,
        user: AuthContext,
        usd_amount: Decimal,
        asset: str,
        payment_proof_ref: str | None,
        crypto_amount: Decimal | None = None,
        payment_method: str | None = None,
    ) -> Transaction:
        """
        Depósito desde el importe en USD. Si el cliente envía su cálculo de
        crypto_amount, debe coincidir con el recalculado en servidor.
        """
        asset = asset.upper()
        if asset not in SUPPORTED_ASSETS:
            raise ValidationFailed(f"Activo no soportado: {asset}", {"supported": sorted(SUPPORTED_ASSETS)})
        if usd_amount <= Decimal("0"):
            raise ValidationFailed("El importe USD debe ser positivo")

        check = validate_minimum(usd_amount, asset, self.min_deposit_usd, self.min_deposit_crypto)
        if not check.valid:
            raise ValidationFailed(check.error or "Importe por debajo del mínimo", {"usd_amount": str(usd_amount)})

        price = await self._submission_price(asset)
        if crypto_amount is not None:
            expected = check_conversion(usd_amount, price, asset, crypto_amount)
        else:
            expected = crypto_from_usd(usd_amount, price, asset)

        return await self.create(
            TransactionInput(
                user_id=user.user_id,
                user_email=user.email,
                kind="deposit",
                asset=asset,
                crypto_amount=expected,
                usd_value=usd_amount,
                payment_proof_ref=payment_proof_ref,
                payment_method=payment_method,
            )
        )

    async def submit_withdrawal(
        self,
        user: AuthContext,
        crypto_amount: Decimal,
        asset: str,
        wallet_address: str | None,
    ) -> Transaction:
        """Retiro: se valora al precio actual para registrar usd_value."""
        asset = asset.upper()
        if asset not in SUPPORTED_ASSETS:
            raise ValidationFailed(f"Activo no soportado: {asset}", {"supported": sorted(SUPPORTED_ASSETS)})
        if crypto_amount <= Decimal("0"):
            raise ValidationFailed("crypto_amount debe ser > 0")

        price = await self._submission_price(asset)
        return await self.create(
            TransactionInput(
                user_id=user.user_id,
                user_email=user.email,
                kind="withdrawal",
                asset=asset,
                crypto_amount=crypto_amount,
                usd_value=usd_from_crypto(crypto_amount, price),
                wallet_address=wallet_address,
            )
        )

    # -----------------------------------------------------------------------
    # Transiciones
    # -----------------------------------------------------------------------

    async def transition(
        self,
        transaction_id: uuid.UUID,
        target_status: str,
        actor: AuthContext | None,
        notes: str | None = None,
    ) -> Transaction:
        """
        pending → approved | rejected. La aprobación delega en el ApprovalEngine;
        si falla, la transacción sigue en pending.
        """
        require_admin(actor)
        if target_status == "approved":
            return await self.engine.approve(transaction_id, actor, notes)
        if target_status == "rejected":
            return await self.engine.reject(transaction_id, actor, notes)
        raise ValidationFailed(
            f"Estado destino inválido: {target_status}",
            {"allowed": ["approved", "rejected"]},
        )

    # -----------------------------------------------------------------------
    # Consultas
    # -----------------------------------------------------------------------

    async def get(self, transaction_id: uuid.UUID, user_id: str | None = None) -> Transaction:
        """Transacción por id; con user_id solo si pertenece a ese usuario."""
        q = select(Transaction).where(Transaction.id == transaction_id).execution_options(populate_existing=True)
        if user_id is not None:
            q = q.where(Transaction.user_id == user_id)
        tx = (await self.db.execute(q)).scalar_one_or_none()
        if tx is None:
            raise NotFound(f"Transacción {transaction_id} no encontrada")
        return tx

    async def list(
        self,
        user_id: str | None = None,
        status: str | None = None,
        kind: str | None = None,
        asset: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Transaction], int]:
        """Página de transacciones más recientes primero, más el total sin paginar."""
        if status and status not in TRANSACTION_STATUSES:
            raise ValidationFailed(f"Estado inválido: {status}", {"allowed": list(TRANSACTION_STATUSES)})
        if kind and kind not in TRANSACTION_KINDS:
            raise ValidationFailed(f"Tipo inválido: {kind}", {"allowed": list(TRANSACTION_KINDS)})

        count_q = _apply_filters(select(func.count()).select_from(Transaction), user_id, status, kind, asset)
        total: int = (await self.db.execute(count_q)).scalar_one()

        data_q = (
            _apply_filters(select(Transaction), user_id, status, kind, asset)
            .order_by(Transaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = (await self.db.execute(data_q)).scalars().all()
        return list(rows), total

    async def stats(self) -> dict:
        """Resumen para el panel de admin: pendientes y volumen aprobado en USD."""
        pending_q = (
            select(Transaction.kind, func.count())
            .where(Transaction.status == "pending")
            .group_by(Transaction.kind)
        )
        pending = {kind: count for kind, count in (await self.db.execute(pending_q)).all()}

        volume_q = (
            select(Transaction.kind, func.coalesce(func.sum(Transaction.usd_value), 0))
            .where(Transaction.status == "approved", Transaction.source == "user")
            .group_by(Transaction.kind)
        )
        volume = {kind: Decimal(str(total)) for kind, total in (await self.db.execute(volume_q)).all()}

        users_q = select(func.count(distinct(Transaction.user_id)))
        total_users: int = (await self.db.execute(users_q)).scalar_one()

        total_deposits = volume.get("deposit", Decimal("0")).quantize(USD_PRECISION, ROUND_HALF_UP)
        total_withdrawals = volume.get("withdrawal", Decimal("0")).quantize(USD_PRECISION, ROUND_HALF_UP)
        return {
            "total_users": total_users,
            "total_deposits_usd": total_deposits,
            "total_withdrawals_usd": total_withdrawals,
            "total_volume_usd": total_deposits + total_withdrawals,
            "pending_deposits": pending.get("deposit", 0),
            "pending_withdrawals": pending.get("withdrawal", 0),
        }

    # -----------------------------------------------------------------------
    # Internos
    # -----------------------------------------------------------------------

    async def _submission_price(self, asset: str) -> Decimal:
        if is_fiat(asset):
            return Decimal("1")
        if self.oracle is None:
            raise PriceUnavailable(f"Sin oráculo de precios para {asset}")
        quote = await self.oracle.get_price(asset)
        if not quote.is_live or quote.price <= Decimal("0"):
            raise PriceUnavailable(f"No hay precio de mercado en vivo para {asset}; inténtalo de nuevo")
        return quote.price


def _apply_filters(query, user_id, status, kind, asset):
    """Aplica filtros comunes a la query de transactions."""
    if user_id:
        query = query.where(Transaction.user_id == user_id)
    if status:
        query = query.where(Transaction.status == status)
    if kind:
        query = query.where(Transaction.kind == kind)
    if asset:
        query = query.where(Transaction.asset == asset.upper())
    return query
