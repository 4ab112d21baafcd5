"""
Fixtures compartidas.
La BD es SQLite en memoria (aiosqlite): el mismo esquema que PostgreSQL,
con with_for_update ignorado por el dialecto.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("APP_ENV", "test")

from decimal import Decimal  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402

from core.database import Database  # noqa: E402
from core.security import AuthContext  # noqa: E402
from services.price_oracle import PriceQuote  # noqa: E402

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


class FakeOracle:
    """Oráculo con precios fijos. `source` permite simular precios de respaldo."""

    def __init__(self, prices: dict[str, str], source: str = "coingecko") -> None:
        self.prices = {k: Decimal(v) for k, v in prices.items()}
        self.source = source
        self.calls: list[list[str]] = []

    async def get_prices(self, symbols) -> dict[str, PriceQuote]:
        wanted = [s.upper() for s in symbols]
        self.calls.append(wanted)
        result = {}
        for s in wanted:
            if s == "USD":
                result[s] = PriceQuote(s, Decimal("1"), Decimal("0"), "fixed")
            elif s in self.prices:
                result[s] = PriceQuote(s, self.prices[s], Decimal("1.5"), self.source)
        return result

    async def get_price(self, asset: str) -> PriceQuote:
        return (await self.get_prices([asset]))[asset.upper()]

    async def close(self) -> None:
        return None


@pytest.fixture
async def database():
    db = Database(TEST_DB_URL)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database):
    async with database.session() as s:
        yield s


@pytest.fixture
def admin() -> AuthContext:
    return AuthContext(user_id="admin-1", role="admin", email="admin@example.com")


@pytest.fixture
def user() -> AuthContext:
    return AuthContext(user_id="user-1", role="user", email="user@example.com")


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle({"BTC": "50000", "ETH": "2500", "SOL": "100", "USDT": "1"})


@pytest.fixture
def notifier() -> AsyncMock:
    """Emisor mockeado: permite contar notificaciones sin tocar la BD."""
    mock = AsyncMock()
    mock.notify_transaction = AsyncMock(return_value=None)
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def fallback_oracle() -> FakeOracle:
    """Solo precios de respaldo estáticos: las operaciones que exigen precio en vivo fallan."""
    return FakeOracle({"BTC": "95000", "ETH": "3300"}, source="fallback")


@pytest.fixture
async def file_database(tmp_path):
    """SQLite en fichero: cada sesión usa su propia conexión y ve los commits de las demás."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await db.create_all()
    yield db
    await db.dispose()
