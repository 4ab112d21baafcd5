"""
Swap instantáneo entre dos activos del propio usuario.

Reglas:
- Precios del oráculo en vivo; un precio de respaldo estático se rechaza.
- Cargo en origen por la misma ruta que un retiro (suelo >= 0, coste medio intacto).
- Abono en destino por la misma mezcla que un depósito, al precio destino.
- Cargo + abono + fila swap_transactions en UNA transacción de BD.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import PriceUnavailable, ValidationFailed
from core.security import AuthContext
from models.balance import BalanceEntry
from models.swap import SwapTransaction
from services.approval_engine import AtomicBoundary, apply_debit, blend_credit, state_of
from services.conversion import (
    CRYPTO_PRECISION,
    SUPPORTED_ASSETS,
    convert_between,
    is_fiat,
    usd_from_crypto,
)
from services.ledger import BalanceLedger
from services.notifications import NotificationEmitter, swap_message
from services.price_oracle import PriceOracle

logger = structlog.get_logger(__name__)

RATE_PRECISION = Decimal("0.00000001")


@dataclass
class SwapResult:
    swap: SwapTransaction
    from_balance: BalanceEntry
    to_balance: BalanceEntry


class SwapService:
    def __init__(
        self,
        db: AsyncSession,
        oracle: PriceOracle,
        notifier: NotificationEmitter | None = None,
    ) -> None:
        self.db = db
        self.oracle = oracle
        self.notifier = notifier
        self.ledger = BalanceLedger(db)

    async def swap(
        self,
        user: AuthContext,
        from_asset: str,
        to_asset: str,
        from_amount: Decimal,
    ) -> SwapResult:
        from_asset, to_asset = from_asset.upper(), to_asset.upper()
        for asset in (from_asset, to_asset):
            if asset not in SUPPORTED_ASSETS:
                raise ValidationFailed(f"Activo no soportado: {asset}", {"supported": sorted(SUPPORTED_ASSETS)})
        if from_asset == to_asset:
            raise ValidationFailed("Los activos de origen y destino deben ser distintos")
        from_amount = from_amount.quantize(CRYPTO_PRECISION, ROUND_HALF_UP)
        if from_amount <= Decimal("0"):
            raise ValidationFailed("La cantidad a convertir debe ser positiva", {"from_amount": str(from_amount)})

        prices = await self._live_prices(from_asset, to_asset)
        from_price, to_price = prices[from_asset], prices[to_asset]
        to_amount = convert_between(from_amount, from_price, to_price, to_asset)
        if to_amount <= Decimal("0"):
            raise ValidationFailed("La cantidad resultante es demasiado pequeña")
        value_usd = usd_from_crypto(from_amount, from_price)

        log = logger.bind(user_id=user.user_id, from_asset=from_asset, to_asset=to_asset)

        async with AtomicBoundary(self.db, log, "swap"):
            source = await self.ledger.get(user.user_id, from_asset, for_update=True)
            target = await self.ledger.get(user.user_id, to_asset, for_update=True)
            debited = apply_debit(state_of(source), from_asset, from_amount)
            credited = blend_credit(state_of(target), to_amount, to_price)

            from_balance = await self.ledger.upsert(
                user.user_id, from_asset, debited.amount, debited.average_buy_price
            )
            to_balance = await self.ledger.upsert(
                user.user_id, to_asset, credited.amount, credited.average_buy_price, new_entry=target is None
            )
            swap = SwapTransaction(
                user_id=user.user_id,
                from_asset=from_asset,
                to_asset=to_asset,
                from_amount=from_amount,
                to_amount=to_amount,
                from_price=from_price,
                to_price=to_price,
                value_usd=value_usd,
                exchange_rate=(from_price / to_price).quantize(RATE_PRECISION, ROUND_HALF_UP),
                status="completed",
            )
            self.db.add(swap)
            await self.db.flush()

        log.info(
            "swap.committed",
            from_amount=str(from_amount),
            to_amount=str(to_amount),
            value_usd=str(value_usd),
        )
        if self.notifier is not None:
            title, message = swap_message(from_asset, from_amount, to_asset, to_amount)
            await self.notifier.notify(
                user_id=user.user_id,
                type="swap",
                title=title,
                message=message,
                metadata={"swap_id": str(swap.id), "value_usd": str(value_usd)},
                email=user.email,
            )
        return SwapResult(swap=swap, from_balance=from_balance, to_balance=to_balance)

    async def _live_prices(self, *assets: str) -> dict[str, Decimal]:
        quotes = await self.oracle.get_prices([a for a in assets if not is_fiat(a)])
        prices: dict[str, Decimal] = {}
        for asset in assets:
            if is_fiat(asset):
                prices[asset] = Decimal("1")
                continue
            quote = quotes.get(asset)
            if quote is None or not quote.is_live or quote.price <= Decimal("0"):
                raise PriceUnavailable(f"No hay precio de mercado en vivo para {asset}")
            prices[asset] = quote.price
        return prices
