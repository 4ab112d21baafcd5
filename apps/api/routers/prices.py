"""
Router: /api/v1/prices
GET /live?symbols=BTC,ETH  → precio USD y variación 24h por símbolo.

Fuentes (en orden de prioridad):
  1. CoinGecko: free tier, sin API key, /simple/price (caché 30s)
  2. Último precio cacheado aunque esté caducado
  3. Precios de respaldo estáticos (meta.live = false: solo previsualización)
"""

from fastapi import APIRouter, Depends, Query

from core.dependencies import get_oracle
from core.responses import ok
from services.conversion import SUPPORTED_ASSETS
from services.price_oracle import PriceOracle

router = APIRouter()

DEFAULT_SYMBOLS = "BTC,ETH,USDT,SOL,ADA,BNB,XRP,DOGE"


@router.get("/live")
async def get_live_prices(
    symbols: str = Query(DEFAULT_SYMBOLS, description="Símbolos separados por comas"),
    oracle: PriceOracle = Depends(get_oracle),
) -> dict:
    wanted = [s.strip().upper() for s in symbols.split(",") if s.strip()]
    wanted = [s for s in wanted if s in SUPPORTED_ASSETS]
    quotes = await oracle.get_prices(wanted)
    return ok(
        data={
            symbol: {
                "price": str(q.price),
                "change_24h": str(q.change_24h),
                "source": q.source,
            }
            for symbol, q in quotes.items()
        },
        meta={"live": all(q.is_live for q in quotes.values())},
    )
