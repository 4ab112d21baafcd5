"""
Calculadora de conversión USD ↔ cripto.

Reglas:
- NUNCA float para datos de negocio: siempre Decimal("...") o Decimal(str(valor))
- Cantidades cripto: 8 decimales. Valores USD: 2 decimales.
- Funciones puras: sin BD, sin IO, 100% testables.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from core.exceptions import ConversionMismatch

# ---------------------------------------------------------------------------
# Constantes
# ---------------------------------------------------------------------------

FIAT_ASSET = "USD"
SUPPORTED_ASSETS = frozenset({"BTC", "ETH", "USDT", "SOL", "ADA", "BNB", "XRP", "DOGE", FIAT_ASSET})

CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimales
USD_PRECISION = Decimal("0.01")           # 2 decimales
CONVERSION_TOLERANCE = Decimal("0.00000001")

# Depósito mínimo en USD por clase de activo (sobrescribibles vía Settings)
MIN_DEPOSIT_USD = Decimal("500")
MIN_DEPOSIT_CRYPTO = Decimal("250")


@dataclass(frozen=True)
class MinimumCheck:
    valid: bool
    error: str | None = None


def is_fiat(asset: str) -> bool:
    return asset == FIAT_ASSET


def crypto_from_usd(usd: Decimal, price: Decimal, asset: str) -> Decimal:
    """
    Cantidad del activo que se obtiene con `usd` dólares a `price` USD/unidad.
    USD se devuelve tal cual (2 decimales). Con price <= 0 devuelve 0:
    el llamador debe tratar un importe cero como inválido.
    """
    if is_fiat(asset):
        return usd.quantize(USD_PRECISION, ROUND_HALF_UP)
    if price <= Decimal("0"):
        return Decimal("0")
    return (usd / price).quantize(CRYPTO_PRECISION, ROUND_HALF_UP)


def usd_from_crypto(crypto: Decimal, price: Decimal) -> Decimal:
    """Valor en USD de `crypto` unidades a `price`, redondeado a centavos."""
    if price <= Decimal("0"):
        return Decimal("0")
    return (crypto * price).quantize(USD_PRECISION, ROUND_HALF_UP)


def convert_between(amount: Decimal, from_price: Decimal, to_price: Decimal, to_asset: str) -> Decimal:
    """
    Convierte `amount` de un activo a otro pasando por USD:
    amount * from_price / to_price. Devuelve 0 si algún precio es inválido.
    """
    if from_price <= Decimal("0") or to_price <= Decimal("0"):
        return Decimal("0")
    usd_value = amount * from_price
    if is_fiat(to_asset):
        return usd_value.quantize(USD_PRECISION, ROUND_HALF_UP)
    return (usd_value / to_price).quantize(CRYPTO_PRECISION, ROUND_HALF_UP)


def validate_minimum(
    usd: Decimal,
    asset: str,
    min_usd: Decimal = MIN_DEPOSIT_USD,
    min_crypto: Decimal = MIN_DEPOSIT_CRYPTO,
) -> MinimumCheck:
    """Depósitos fiat y cripto tienen umbrales mínimos distintos, ambos en USD."""
    if is_fiat(asset):
        if usd < min_usd:
            return MinimumCheck(valid=False, error=f"El depósito mínimo en USD es ${min_usd:,}")
    elif usd < min_crypto:
        return MinimumCheck(valid=False, error=f"El depósito mínimo en cripto es ${min_crypto:,} equivalentes")
    return MinimumCheck(valid=True)


def check_conversion(usd: Decimal, price: Decimal, asset: str, submitted_crypto: Decimal) -> Decimal:
    """
    Recalcula la cantidad esperada y la compara con la enviada por el cliente.
    Una desviación > CONVERSION_TOLERANCE indica un precio cacheado obsoleto
    en el cliente: se rechaza con ConversionMismatch.
    Devuelve la cantidad recalculada.
    """
    expected = crypto_from_usd(usd, price, asset)
    if abs(submitted_crypto - expected) > CONVERSION_TOLERANCE:
        raise ConversionMismatch(
            f"La cantidad enviada {submitted_crypto} {asset} no coincide con la esperada {expected}",
            {"submitted": str(submitted_crypto), "expected": str(expected), "price": str(price)},
        )
    return expected
