"""
Router: /api/v1/portfolio
GET  /balances  → entradas del ledger del usuario
GET  /overview  → valoración a precio de mercado y P&L
POST /swap      → conversión instantánea entre dos activos propios
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from core.dependencies import get_current_user, get_portfolio_service, get_swap_service
from core.responses import ok
from core.security import AuthContext
from models.balance import BalanceEntry
from services.portfolio_service import AssetMetrics, PortfolioService
from services.swap_service import SwapService

router = APIRouter()


class SwapRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_asset: str = Field(min_length=2, max_length=10, alias="fromAsset")
    to_asset: str = Field(min_length=2, max_length=10, alias="toAsset")
    from_amount: Decimal = Field(gt=0, alias="fromAmount")


@router.get("/balances")
async def get_balances(
    user: AuthContext = Depends(get_current_user),
    service: PortfolioService = Depends(get_portfolio_service),
) -> dict:
    entries = await service.balances(user.user_id)
    return ok(data=[_balance_to_dict(e) for e in entries])


@router.get("/overview")
async def get_overview(
    user: AuthContext = Depends(get_current_user),
    service: PortfolioService = Depends(get_portfolio_service),
) -> dict:
    """
    Valor total, capital invertido (sin ajustes del admin) y P&L por activo.
    meta.live = false si algún activo se valoró con un precio de respaldo.
    """
    overview = await service.overview(user.user_id)
    return ok(
        data={
            "total_value_usd": str(overview.total_value_usd),
            "invested_usd": str(overview.invested_usd),
            "pnl_usd": str(overview.pnl_usd),
            "pnl_pct": str(overview.pnl_pct),
            "assets": [_metrics_to_dict(m) for m in overview.assets],
        },
        meta={"live": all(m.price_source != "fallback" for m in overview.assets)},
    )


@router.post("/swap", status_code=status.HTTP_201_CREATED)
async def swap_assets(
    body: SwapRequest,
    user: AuthContext = Depends(get_current_user),
    service: SwapService = Depends(get_swap_service),
) -> dict:
    result = await service.swap(user, body.from_asset, body.to_asset, body.from_amount)
    swap = result.swap
    return ok(
        data={
            "id": str(swap.id),
            "from_asset": swap.from_asset,
            "to_asset": swap.to_asset,
            "from_amount": str(swap.from_amount),
            "to_amount": str(swap.to_amount),
            "from_price": str(swap.from_price),
            "to_price": str(swap.to_price),
            "value_usd": str(swap.value_usd),
            "exchange_rate": str(swap.exchange_rate),
            "status": swap.status,
            "balances": [_balance_to_dict(result.from_balance), _balance_to_dict(result.to_balance)],
        }
    )


def _balance_to_dict(entry: BalanceEntry) -> dict:
    return {
        "asset": entry.asset,
        "amount": str(entry.amount),
        "average_buy_price": str(entry.average_buy_price),
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }


def _metrics_to_dict(m: AssetMetrics) -> dict:
    return {
        "asset": m.asset,
        "amount": str(m.amount),
        "price_usd": str(m.price_usd),
        "change_24h": str(m.change_24h),
        "value_usd": str(m.value_usd),
        "average_buy_price": str(m.average_buy_price),
        "invested_usd": str(m.invested_usd),
        "pnl_usd": str(m.pnl_usd),
        "pnl_pct": str(m.pnl_pct),
        "portfolio_pct": str(m.portfolio_pct),
        "price_source": m.price_source,
    }
