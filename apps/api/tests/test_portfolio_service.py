"""
Tests de la valoración del portafolio.
Los algoritmos puros no requieren base de datos.
Todas las aserciones usan Decimal para evitar errores de precisión.
"""

from decimal import Decimal
from unittest.mock import MagicMock

from models.balance import BalanceEntry
from services.approval_engine import ApprovalEngine
from services.ledger import BalanceLedger
from services.portfolio_service import PortfolioService, compute_asset_metrics, compute_overview
from services.price_oracle import PriceQuote

# ---------------------------------------------------------------------------
# Helpers de fixtures
# ---------------------------------------------------------------------------


def make_entry(asset: str, amount: str, avg: str):
    """Crea una entrada mínima del ledger para tests (no necesita SQLAlchemy)."""
    entry = MagicMock(spec=BalanceEntry)
    entry.asset = asset
    entry.amount = Decimal(amount)
    entry.average_buy_price = Decimal(avg)
    return entry


def quote(asset: str, price: str, source: str = "coingecko") -> PriceQuote:
    return PriceQuote(asset, Decimal(price), Decimal("0"), source)


# ===========================================================================
# Tests: compute_asset_metrics
# ===========================================================================


class TestComputeAssetMetrics:
    def test_value_and_pnl(self):
        m = compute_asset_metrics(make_entry("BTC", "0.5", "40000"), Decimal("0"), quote("BTC", "50000"))

        assert m.value_usd == Decimal("25000.00")
        assert m.invested_usd == Decimal("20000.00")
        assert m.pnl_usd == Decimal("5000.00")
        assert m.pnl_pct == Decimal("25.00")

    def test_admin_adjustments_excluded_from_invested(self):
        """0.6 BTC de los que 0.1 los añadió un admin: invertido = 0.5 * 40000."""
        m = compute_asset_metrics(make_entry("BTC", "0.6", "40000"), Decimal("0.1"), quote("BTC", "50000"))

        assert m.value_usd == Decimal("30000.00")
        assert m.invested_amount == Decimal("0.5")
        assert m.invested_usd == Decimal("20000.00")
        assert m.pnl_usd == Decimal("5000.00")

    def test_non_positive_invested_amount_contributes_nothing(self):
        m = compute_asset_metrics(make_entry("ETH", "0.2", "2000"), Decimal("0.3"), quote("ETH", "2500"))

        assert m.invested_usd == Decimal("0")
        assert m.pnl_usd == Decimal("0")
        assert m.pnl_pct == Decimal("0")
        assert m.value_usd == Decimal("500.00")

    def test_usd_is_valued_at_one(self):
        m = compute_asset_metrics(make_entry("USD", "600", "1"), Decimal("0"), None)
        assert m.price_usd == Decimal("1")
        assert m.value_usd == Decimal("600.00")
        assert m.price_source == "fixed"

    def test_missing_quote_values_at_zero(self):
        m = compute_asset_metrics(make_entry("DOGE", "100", "0.3"), Decimal("0"), None)
        assert m.value_usd == Decimal("0")
        assert m.price_source == "missing"


# ===========================================================================
# Tests: compute_overview
# ===========================================================================


class TestComputeOverview:
    def test_totals_and_portfolio_pct(self):
        entries = [make_entry("BTC", "0.1", "40000"), make_entry("ETH", "2", "2500")]
        quotes = {"BTC": quote("BTC", "50000"), "ETH": quote("ETH", "2500")}

        overview = compute_overview(entries, {}, quotes)

        assert overview.total_value_usd == Decimal("10000.00")
        assert overview.invested_usd == Decimal("9000.00")
        assert overview.pnl_usd == Decimal("1000.00")
        assert overview.pnl_pct == Decimal("11.11")
        # ordenado por valor descendente; a partes iguales se respeta el orden
        assert [m.portfolio_pct for m in overview.assets] == [Decimal("50.00"), Decimal("50.00")]

    def test_zero_balances_skipped(self):
        overview = compute_overview([make_entry("SOL", "0", "100")], {}, {"SOL": quote("SOL", "100")})
        assert overview.assets == []
        assert overview.total_value_usd == Decimal("0")
        assert overview.pnl_pct == Decimal("0")


# ===========================================================================
# Tests: PortfolioService con BD
# ===========================================================================


class TestPortfolioService:
    async def test_overview_discounts_adjustments(self, session, admin, oracle):
        await BalanceLedger(session).upsert("user-1", "BTC", Decimal("0.1"), Decimal("40000"))
        await session.commit()
        # +1000 USD @ 50000 = 0.02 BTC concedidos por el admin
        await ApprovalEngine(session, oracle=oracle).adjust_balance(admin, "user-1", "BTC", "add", Decimal("1000"))

        overview = await PortfolioService(session, oracle).overview("user-1")

        [btc] = overview.assets
        assert btc.amount == Decimal("0.12")
        assert btc.invested_amount == Decimal("0.1")
        assert btc.value_usd == Decimal("6000.00")

    async def test_empty_portfolio(self, session, oracle):
        overview = await PortfolioService(session, oracle).overview("nobody")
        assert overview.assets == []
        assert oracle.calls == []
