"""
Servicio de valoración del portafolio de un usuario.

Reglas críticas:
- NUNCA float para datos de negocio: siempre Decimal.
- Valor de mercado = amount * precio actual (USD vale 1).
- Capital invertido = (amount - ajustes netos del admin) * average_buy_price.
  Las cantidades concedidas o retiradas por un admin no cuentan como inversión.
  Si la cantidad invertida resultante es <= 0, el activo no aporta inversión.
- P&L = cantidad_invertida * precio_actual - invertido; P&L % = P&L / invertido * 100.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.adjustment import AdminBalanceAdjustment
from models.balance import BalanceEntry
from services.conversion import CRYPTO_PRECISION, USD_PRECISION, is_fiat
from services.ledger import BalanceLedger
from services.price_oracle import PriceOracle, PriceQuote

logger = structlog.get_logger(__name__)

PCT_PRECISION = Decimal("0.01")           # 2 decimales para porcentajes


# ---------------------------------------------------------------------------
# Tipos de retorno
# ---------------------------------------------------------------------------


@dataclass
class AssetMetrics:
    asset: str
    amount: Decimal
    price_usd: Decimal
    change_24h: Decimal
    value_usd: Decimal
    average_buy_price: Decimal
    invested_amount: Decimal    # amount sin los ajustes netos del admin
    invested_usd: Decimal
    pnl_usd: Decimal
    pnl_pct: Decimal
    portfolio_pct: Decimal      # % del valor total (se rellena en overview)
    price_source: str


@dataclass
class PortfolioOverview:
    total_value_usd: Decimal
    invested_usd: Decimal
    pnl_usd: Decimal
    pnl_pct: Decimal
    assets: list[AssetMetrics]


# ---------------------------------------------------------------------------
# Algoritmos puros (sin BD, sin IO, 100% testables)
# ---------------------------------------------------------------------------


def _pct(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= Decimal("0"):
        return Decimal("0")
    return (part / whole * Decimal("100")).quantize(PCT_PRECISION, ROUND_HALF_UP)


def compute_asset_metrics(
    entry: BalanceEntry,
    net_adjustment: Decimal,
    quote: PriceQuote | None,
) -> AssetMetrics:
    """
    Métricas de una entrada del ledger.
    net_adjustment: suma de ajustes add menos subtract (en unidades del activo).
    quote: precio actual; sin cotización el activo se valora a 0.
    """
    if is_fiat(entry.asset):
        price, change, source = Decimal("1"), Decimal("0"), "fixed"
    elif quote is not None:
        price, change, source = quote.price, quote.change_24h, quote.source
    else:
        price, change, source = Decimal("0"), Decimal("0"), "missing"

    value_usd = (entry.amount * price).quantize(USD_PRECISION, ROUND_HALF_UP)

    invested_amount = (entry.amount - net_adjustment).quantize(CRYPTO_PRECISION, ROUND_HALF_UP)
    if invested_amount > Decimal("0"):
        invested_usd = (invested_amount * entry.average_buy_price).quantize(USD_PRECISION, ROUND_HALF_UP)
        pnl_usd = (invested_amount * price - invested_usd).quantize(USD_PRECISION, ROUND_HALF_UP)
    else:
        invested_amount = Decimal("0")
        invested_usd = Decimal("0")
        pnl_usd = Decimal("0")

    return AssetMetrics(
        asset=entry.asset,
        amount=entry.amount,
        price_usd=price,
        change_24h=change,
        value_usd=value_usd,
        average_buy_price=entry.average_buy_price,
        invested_amount=invested_amount,
        invested_usd=invested_usd,
        pnl_usd=pnl_usd,
        pnl_pct=_pct(pnl_usd, invested_usd),
        portfolio_pct=Decimal("0"),
        price_source=source,
    )


def compute_overview(
    entries: list[BalanceEntry],
    net_adjustments: dict[str, Decimal],
    quotes: dict[str, PriceQuote],
) -> PortfolioOverview:
    """Agrega las métricas por activo. Las entradas con amount 0 se omiten."""
    metrics = [
        compute_asset_metrics(e, net_adjustments.get(e.asset, Decimal("0")), quotes.get(e.asset))
        for e in entries
        if e.amount > Decimal("0")
    ]

    total_value = sum((m.value_usd for m in metrics), Decimal("0"))
    invested = sum((m.invested_usd for m in metrics), Decimal("0"))
    pnl = sum((m.pnl_usd for m in metrics), Decimal("0"))

    for m in metrics:
        m.portfolio_pct = _pct(m.value_usd, total_value)

    return PortfolioOverview(
        total_value_usd=total_value,
        invested_usd=invested,
        pnl_usd=pnl,
        pnl_pct=_pct(pnl, invested),
        assets=sorted(metrics, key=lambda m: m.value_usd, reverse=True),
    )


# ---------------------------------------------------------------------------
# Servicio con acceso a base de datos
# ---------------------------------------------------------------------------


class PortfolioService:
    """
    Lee el ledger y los ajustes del admin y valora con el oráculo.
    Para valorar se aceptan precios de respaldo (solo lectura).
    """

    def __init__(self, db: AsyncSession, oracle: PriceOracle) -> None:
        self.db = db
        self.oracle = oracle
        self.ledger = BalanceLedger(db)

    async def balances(self, user_id: str) -> list[BalanceEntry]:
        return await self.ledger.list_for_user(user_id)

    async def _net_adjustments(self, user_id: str) -> dict[str, Decimal]:
        """Ajustes netos por activo: add suma, subtract resta."""
        signed = case(
            (AdminBalanceAdjustment.adjustment_type == "add", AdminBalanceAdjustment.crypto_amount),
            else_=-AdminBalanceAdjustment.crypto_amount,
        )
        q = (
            select(AdminBalanceAdjustment.asset, func.coalesce(func.sum(signed), 0))
            .where(AdminBalanceAdjustment.user_id == user_id)
            .group_by(AdminBalanceAdjustment.asset)
        )
        rows = (await self.db.execute(q)).all()
        return {asset: Decimal(str(total)) for asset, total in rows}

    async def overview(self, user_id: str) -> PortfolioOverview:
        entries = await self.ledger.list_for_user(user_id)
        adjustments = await self._net_adjustments(user_id)
        quotes = await self.oracle.get_prices([e.asset for e in entries]) if entries else {}

        result = compute_overview(entries, adjustments, quotes)
        logger.debug(
            "portfolio.overview",
            user_id=user_id,
            assets=len(result.assets),
            total_value_usd=str(result.total_value_usd),
        )
        return result
