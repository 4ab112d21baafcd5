"""
Adaptador de precios de mercado (CoinGecko /simple/price).

Reglas:
- NUNCA lanza: ante un fallo de red o de formato devuelve primero los precios
  cacheados (aunque estén caducados) y, si no hay, los precios por defecto.
- Caché en memoria con TTL corto (PRICE_CACHE_TTL_SECONDS, 30s por defecto).
- USD vale siempre 1.
- El httpx.AsyncClient es inyectable para facilitar tests unitarios.
"""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx
import structlog

from services.conversion import FIAT_ASSET

logger = structlog.get_logger(__name__)

COINGECKO_URL = "https://api.coingecko.com/api/v3"

COIN_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "ADA": "cardano",
    "SOL": "solana",
    "USDT": "tether",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "DOGE": "dogecoin",
}

# Precios de respaldo cuando la API no responde (solo previsualización en UI)
FALLBACK_PRICES: dict[str, Decimal] = {
    "BTC": Decimal("95000"),
    "ETH": Decimal("3300"),
    "USDT": Decimal("1"),
    "SOL": Decimal("145"),
    "ADA": Decimal("0.85"),
    "BNB": Decimal("610"),
    "XRP": Decimal("2.15"),
    "DOGE": Decimal("0.32"),
}

_TIMEOUT = httpx.Timeout(6.0)


@dataclass(frozen=True)
class PriceQuote:
    asset: str
    price: Decimal
    change_24h: Decimal
    source: str   # "coingecko" | "cache" | "fallback" | "fixed"

    @property
    def is_live(self) -> bool:
        """False si el precio es un valor por defecto estático."""
        return self.source != "fallback"


def _to_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PriceOracle:
    """
    Uso:
        oracle = PriceOracle(http_client=client)
        prices = await oracle.get_prices(["BTC", "ETH"])
        prices["BTC"].price  # Decimal
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = COINGECKO_URL,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(timeout=_TIMEOUT)
        self._base_url = base_url.rstrip("/")
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[PriceQuote, float]] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def get_price(self, asset: str) -> PriceQuote:
        return (await self.get_prices([asset]))[asset]

    async def get_prices(self, symbols: Iterable[str]) -> dict[str, PriceQuote]:
        """
        Precio USD y variación 24h por símbolo.
        Los símbolos desconocidos sin datos ni fallback se omiten del resultado.
        """
        wanted = list(dict.fromkeys(s.upper() for s in symbols))
        now = self._clock()
        result: dict[str, PriceQuote] = {}
        missing: list[str] = []

        for symbol in wanted:
            if symbol == FIAT_ASSET:
                result[symbol] = PriceQuote(symbol, Decimal("1"), Decimal("0"), "fixed")
                continue
            cached = self._cache.get(symbol)
            if cached and now - cached[1] < self._ttl:
                result[symbol] = cached[0]
            else:
                missing.append(symbol)

        if not missing:
            return result

        try:
            fetched = await self._fetch_coingecko(missing)
        except Exception as exc:
            logger.warning("prices.fetch_failed", symbols=missing, error=str(exc))
            fetched = {}

        for symbol in missing:
            quote = fetched.get(symbol)
            if quote is not None:
                self._cache[symbol] = (quote, now)
                result[symbol] = quote
                continue
            stale = self._cache.get(symbol)
            if stale is not None:
                result[symbol] = PriceQuote(symbol, stale[0].price, stale[0].change_24h, "cache")
            elif symbol in FALLBACK_PRICES:
                result[symbol] = PriceQuote(symbol, FALLBACK_PRICES[symbol], Decimal("0"), "fallback")

        return result

    async def _fetch_coingecko(self, symbols: list[str]) -> dict[str, PriceQuote]:
        ids = {COIN_IDS.get(s, s.lower()): s for s in symbols}
        resp = await self._client.get(
            f"{self._base_url}/simple/price",
            params={
                "ids": ",".join(ids),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
            },
        )
        resp.raise_for_status()
        data = resp.json()

        quotes: dict[str, PriceQuote] = {}
        for coin_id, symbol in ids.items():
            entry = data.get(coin_id) or {}
            price = _to_decimal(entry.get("usd"))
            if price is None or price <= Decimal("0"):
                continue
            change = _to_decimal(entry.get("usd_24h_change")) or Decimal("0")
            quotes[symbol] = PriceQuote(symbol, price, change, "coingecko")

        logger.debug("prices.fetched", requested=len(symbols), received=len(quotes))
        return quotes
