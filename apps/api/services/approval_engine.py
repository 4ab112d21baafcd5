"""
Motor de aprobación: traduce una decisión del admin en una mutación
consistente del ledger.

Reglas críticas:
- NUNCA float para datos de negocio: siempre Decimal.
- Coste medio ponderado: (qty_prev * avg_prev + qty_dep * precio_dep) / qty_total.
  Se recalcula SOLO en abonos; los retiros no cambian el coste medio.
- amount >= 0 siempre: un retiro que lo dejaría negativo se rechaza ANTES de escribir.
- {ledger upsert + cambio de estado} en UNA transacción de BD. Ante cualquier
  fallo: rollback y la transacción sigue en pending (reintentable).
- Escritura de estado por compare-and-swap sobre status = 'pending'.
- La notificación se emite después del commit y su fallo no deshace nada.
"""

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from core.exceptions import (
    AlreadyTerminal,
    ApprovalFailed,
    Forbidden,
    InsufficientBalance,
    LedgerError,
    NotFound,
    PriceUnavailable,
    ValidationFailed,
)
from core.security import AuthContext
from models.adjustment import ADJUSTMENT_TYPES, AdminBalanceAdjustment
from models.balance import BalanceEntry
from models.base import utcnow
from models.transaction import TERMINAL_STATUSES, Transaction
from services.conversion import (
    CRYPTO_PRECISION,
    SUPPORTED_ASSETS,
    USD_PRECISION,
    crypto_from_usd,
    is_fiat,
)
from services.ledger import BalanceLedger
from services.notifications import (
    NotificationEmitter,
    adjustment_message,
    approved_message,
    rejected_message,
)
from services.price_oracle import PriceOracle

logger = structlog.get_logger(__name__)

PRICE_PRECISION = Decimal("0.00000001")   # 8 decimales para precios medios


# ---------------------------------------------------------------------------
# Tipos de retorno
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceState:
    amount: Decimal
    average_buy_price: Decimal


EMPTY_BALANCE = BalanceState(amount=Decimal("0"), average_buy_price=Decimal("0"))


@dataclass
class AdjustmentResult:
    transaction: Transaction
    adjustment: AdminBalanceAdjustment
    balance: BalanceEntry


# ---------------------------------------------------------------------------
# Algoritmos puros (sin BD, sin IO, 100% testables)
# ---------------------------------------------------------------------------


def state_of(entry: BalanceEntry | None) -> BalanceState | None:
    if entry is None:
        return None
    return BalanceState(amount=entry.amount, average_buy_price=entry.average_buy_price)


def blend_credit(existing: BalanceState | None, quantity: Decimal, unit_price: Decimal) -> BalanceState:
    """Abono de `quantity` unidades a `unit_price`: mezcla el coste medio ponderado."""
    existing = existing or EMPTY_BALANCE
    if quantity <= Decimal("0"):
        raise ValidationFailed("La cantidad a abonar debe ser positiva", {"quantity": str(quantity)})
    if unit_price < Decimal("0"):
        raise ValidationFailed("El precio unitario no puede ser negativo", {"unit_price": str(unit_price)})

    new_amount = (existing.amount + quantity).quantize(CRYPTO_PRECISION, ROUND_HALF_UP)
    new_avg = (
        (existing.amount * existing.average_buy_price + quantity * unit_price) / new_amount
    ).quantize(PRICE_PRECISION, ROUND_HALF_UP)
    return BalanceState(amount=new_amount, average_buy_price=new_avg)


def deposit_blend(existing: BalanceState | None, crypto_amount: Decimal, usd_value: Decimal) -> BalanceState:
    """
    Nuevo estado tras aprobar un depósito.
    precio_depósito = usd_value / crypto_amount (falla si crypto_amount == 0).
    """
    if crypto_amount <= Decimal("0"):
        raise ValidationFailed("crypto_amount debe ser > 0", {"crypto_amount": str(crypto_amount)})
    return blend_credit(existing, crypto_amount, usd_value / crypto_amount)


def apply_debit(existing: BalanceState | None, asset: str, quantity: Decimal) -> BalanceState:
    """
    Nuevo estado tras un cargo. El coste medio no cambia.
    Sin entrada o con saldo insuficiente → InsufficientBalance (fail closed).
    """
    if quantity <= Decimal("0"):
        raise ValidationFailed("La cantidad a cargar debe ser positiva", {"quantity": str(quantity)})
    available = existing.amount if existing is not None else Decimal("0")
    if existing is None or available < quantity:
        raise InsufficientBalance(asset=asset, required=quantity, available=available)
    return BalanceState(
        amount=(existing.amount - quantity).quantize(CRYPTO_PRECISION, ROUND_HALF_UP),
        average_buy_price=existing.average_buy_price,
    )


def ensure_transition(transaction_id: uuid.UUID, current: str, target: str) -> None:
    """
    Máquina de estados: pending → approved | rejected. Los estados terminales
    no admiten ninguna transición.
    """
    if target not in TERMINAL_STATUSES:
        raise ValidationFailed(
            f"Estado destino inválido: {target}",
            {"allowed": sorted(TERMINAL_STATUSES)},
        )
    if current != "pending":
        raise AlreadyTerminal(transaction_id, current)


def require_admin(actor: AuthContext | None) -> AuthContext:
    if actor is None or not actor.is_admin:
        raise Forbidden("Se requieren privilegios de administrador")
    return actor


# ---------------------------------------------------------------------------
# Servicio con acceso a base de datos
# ---------------------------------------------------------------------------


class ApprovalEngine:
    """
    Autoridad de transiciones de estado sobre transactions + user_balances.

    Uso:
        engine = ApprovalEngine(db=session, notifier=NotificationEmitter(session))
        tx = await engine.approve(tx_id, actor=admin)
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationEmitter | None = None,
        oracle: PriceOracle | None = None,
    ) -> None:
        self.db = db
        self.ledger = BalanceLedger(db)
        self.notifier = notifier
        self.oracle = oracle

    # -----------------------------------------------------------------------
    # Transiciones
    # -----------------------------------------------------------------------

    async def approve(
        self,
        transaction_id: uuid.UUID,
        actor: AuthContext | None,
        notes: str | None = None,
    ) -> Transaction:
        admin = require_admin(actor)
        log = logger.bind(transaction_id=str(transaction_id), admin_id=admin.user_id)

        async with self._atomic(log, "approve"):
            tx = await self._load_for_transition(transaction_id, "approved")
            if tx.crypto_amount <= Decimal("0") or tx.usd_value <= Decimal("0"):
                raise ValidationFailed(
                    "Una transacción aprobada requiere crypto_amount > 0 y usd_value > 0",
                    {"crypto_amount": str(tx.crypto_amount), "usd_value": str(tx.usd_value)},
                )
            entry = await self._apply_to_ledger(tx)
            await self._mark_terminal(tx, "approved", admin, notes)

        log.info(
            "approval.committed",
            kind=tx.kind,
            asset=tx.asset,
            crypto_amount=str(tx.crypto_amount),
            balance=str(entry.amount),
            average_buy_price=str(entry.average_buy_price),
        )
        await self._notify(tx, *approved_message(tx))
        return tx

    async def reject(
        self,
        transaction_id: uuid.UUID,
        actor: AuthContext | None,
        notes: str | None = None,
    ) -> Transaction:
        admin = require_admin(actor)
        log = logger.bind(transaction_id=str(transaction_id), admin_id=admin.user_id)

        async with self._atomic(log, "reject"):
            tx = await self._load_for_transition(transaction_id, "rejected")
            await self._mark_terminal(tx, "rejected", admin, notes)

        log.info("rejection.committed", kind=tx.kind, asset=tx.asset)
        await self._notify(tx, *rejected_message(tx))
        return tx

    # -----------------------------------------------------------------------
    # Ajuste manual de balance (admin)
    # -----------------------------------------------------------------------

    async def adjust_balance(
        self,
        actor: AuthContext | None,
        user_id: str,
        asset: str,
        adjustment_type: str,
        usd_amount: Decimal,
        reason: str | None = None,
    ) -> AdjustmentResult:
        """
        Suma o resta un importe en USD al balance de un activo, convertido al
        precio en vivo. Deja una transacción sintética aprobada y una fila de
        auditoría en admin_balance_adjustments, todo en la misma transacción.
        """
        admin = require_admin(actor)
        asset = asset.upper()
        if not user_id:
            raise ValidationFailed("user_id es obligatorio")
        if asset not in SUPPORTED_ASSETS:
            raise ValidationFailed(f"Activo no soportado: {asset}", {"supported": sorted(SUPPORTED_ASSETS)})
        if adjustment_type not in ADJUSTMENT_TYPES:
            raise ValidationFailed(f"Tipo de ajuste inválido: {adjustment_type}", {"allowed": list(ADJUSTMENT_TYPES)})
        usd_amount = usd_amount.quantize(USD_PRECISION, ROUND_HALF_UP)
        if usd_amount <= Decimal("0"):
            raise ValidationFailed("El importe USD debe ser positivo", {"usd_amount": str(usd_amount)})

        price = await self._live_price(asset)
        crypto_amount = crypto_from_usd(usd_amount, price, asset)
        if crypto_amount <= Decimal("0"):
            raise ValidationFailed("El importe es demasiado pequeño para el precio actual")

        log = logger.bind(user_id=user_id, asset=asset, admin_id=admin.user_id, adjustment_type=adjustment_type)

        async with self._atomic(log, "adjust"):
            existing = await self.ledger.get(user_id, asset, for_update=True)
            if adjustment_type == "add":
                new_state = blend_credit(state_of(existing), crypto_amount, price)
                kind = "deposit"
            else:
                new_state = apply_debit(state_of(existing), asset, crypto_amount)
                kind = "withdrawal"
            entry = await self.ledger.upsert(
                user_id, asset, new_state.amount, new_state.average_buy_price, new_entry=existing is None
            )

            tx = Transaction(
                id=uuid.uuid4(),
                user_id=user_id,
                kind=kind,
                asset=asset,
                crypto_amount=crypto_amount,
                usd_value=usd_amount,
                status="approved",
                source="admin_adjustment",
                admin_notes=reason,
                approved_by=admin.user_id,
                approved_at=utcnow(),
            )
            adjustment = AdminBalanceAdjustment(
                user_id=user_id,
                asset=asset,
                adjustment_type=adjustment_type,
                usd_amount=usd_amount,
                crypto_amount=crypto_amount,
                price_usd=price,
                reason=reason,
                admin_id=admin.user_id,
                transaction_id=tx.id,
            )
            self.db.add(tx)
            self.db.add(adjustment)
            await self.db.flush()

        log.info("adjustment.committed", crypto_amount=str(crypto_amount), balance=str(entry.amount))
        if self.notifier is not None:
            title, message = adjustment_message(adjustment_type, asset, usd_amount, crypto_amount)
            await self.notifier.notify(
                user_id=user_id,
                type="adjustment",
                title=title,
                message=message,
                metadata={"transaction_id": str(tx.id), "adjustment_id": str(adjustment.id)},
            )
        return AdjustmentResult(transaction=tx, adjustment=adjustment, balance=entry)

    # -----------------------------------------------------------------------
    # Internos
    # -----------------------------------------------------------------------

    def _atomic(self, log, operation: str) -> "AtomicBoundary":
        return AtomicBoundary(self.db, log, operation)

    async def _load_for_transition(self, transaction_id: uuid.UUID, target: str) -> Transaction:
        """Carga la transacción bloqueando la fila y valida la transición."""
        q = (
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        tx = (await self.db.execute(q)).scalar_one_or_none()
        if tx is None:
            raise NotFound(f"Transacción {transaction_id} no encontrada")
        ensure_transition(transaction_id, tx.status, target)
        return tx

    async def _apply_to_ledger(self, tx: Transaction) -> BalanceEntry:
        existing = await self.ledger.get(tx.user_id, tx.asset, for_update=True)
        if tx.kind == "deposit":
            new_state = deposit_blend(state_of(existing), tx.crypto_amount, tx.usd_value)
        else:
            new_state = apply_debit(state_of(existing), tx.asset, tx.crypto_amount)
        return await self.ledger.upsert(
            tx.user_id, tx.asset, new_state.amount, new_state.average_buy_price, new_entry=existing is None
        )

    async def _mark_terminal(
        self,
        tx: Transaction,
        status: str,
        admin: AuthContext,
        notes: str | None,
    ) -> None:
        """Compare-and-swap: solo escribe si la fila sigue en pending."""
        values = {
            "status": status,
            "approved_by": admin.user_id,
            "approved_at": utcnow(),
        }
        if notes is not None:
            values["admin_notes"] = notes
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == tx.id, Transaction.status == "pending")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Otro admin la movió entre la lectura y el CAS
            current = await self.db.scalar(select(Transaction.status).where(Transaction.id == tx.id))
            raise AlreadyTerminal(tx.id, current or "concurrently transitioned")
        # Refleja el CAS en el objeto sin marcarlo como modificado
        for key, value in values.items():
            set_committed_value(tx, key, value)

    async def _live_price(self, asset: str) -> Decimal:
        if is_fiat(asset):
            return Decimal("1")
        if self.oracle is None:
            raise PriceUnavailable(f"Sin oráculo de precios para {asset}")
        quote = await self.oracle.get_price(asset)
        if not quote.is_live or quote.price <= Decimal("0"):
            raise PriceUnavailable(f"No hay precio de mercado en vivo para {asset}")
        return quote.price

    async def _notify(self, tx: Transaction, title: str, message: str) -> None:
        if self.notifier is not None:
            await self.notifier.notify_transaction(tx, title, message)


class AtomicBoundary:
    """
    Frontera transaccional de una operación del motor:
    - éxito → commit
    - LedgerError → rollback y se relanza tal cual
    - cualquier otra excepción → rollback y ApprovalFailed (reintentable)
    """

    def __init__(self, db: AsyncSession, log, operation: str) -> None:
        self.db = db
        self.log = log
        self.operation = operation

    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            try:
                await self.db.commit()
            except SQLAlchemyError as commit_exc:
                await self.db.rollback()
                self.log.error(f"{self.operation}.commit_failed", error=str(commit_exc))
                raise ApprovalFailed(
                    "No se pudo confirmar la operación; la transacción sigue pendiente",
                    {"operation": self.operation},
                ) from commit_exc
            return False

        await self.db.rollback()
        if isinstance(exc, LedgerError):
            self.log.warning(f"{self.operation}.refused", code=exc.code, error=exc.message)
            return False
        if not isinstance(exc, Exception):
            # CancelledError / KeyboardInterrupt: solo rollback
            return False
        self.log.error(
            f"{self.operation}.persistence_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            integrity=isinstance(exc, IntegrityError),
        )
        raise ApprovalFailed(
            "Fallo de persistencia; la transacción sigue pendiente",
            {"operation": self.operation},
        ) from exc
