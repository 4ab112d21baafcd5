"""
Acceso al ledger de balances (user_balances).

Reglas:
- ÚNICO punto de escritura de amount / average_buy_price.
- upsert recibe valores ABSOLUTOS (nunca deltas): reintentar con los mismos
  argumentos deja el mismo estado final, sin doble conteo.
- ON CONFLICT (user_id, asset) DO UPDATE sobre la restricción única compuesta,
  salvo al crear una entrada leída como inexistente (INSERT simple).
- No hace commit: la frontera transaccional la controla el llamador.
"""

from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ValidationFailed
from models.balance import BalanceEntry
from models.base import utcnow

logger = structlog.get_logger(__name__)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class BalanceLedger:
    """
    Uso:
        ledger = BalanceLedger(db=session)
        entry = await ledger.get(user_id, "BTC", for_update=True)
        await ledger.upsert(user_id, "BTC", amount, avg_price)
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: str, asset: str, for_update: bool = False) -> BalanceEntry | None:
        """
        Entrada del ledger para (user_id, asset) o None.
        for_update=True bloquea la fila hasta el fin de la transacción
        (serializa aprobaciones concurrentes sobre el mismo par).
        """
        q = select(BalanceEntry).where(
            BalanceEntry.user_id == user_id,
            BalanceEntry.asset == asset,
        )
        if for_update:
            q = q.with_for_update()
        q = q.execution_options(populate_existing=True)
        result = await self.db.execute(q)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[BalanceEntry]:
        q = select(BalanceEntry).where(BalanceEntry.user_id == user_id).order_by(BalanceEntry.asset)
        result = await self.db.execute(q)
        return list(result.scalars().all())

    async def upsert(
        self,
        user_id: str,
        asset: str,
        amount: Decimal,
        average_buy_price: Decimal,
        new_entry: bool = False,
    ) -> BalanceEntry:
        """
        Escribe el estado absoluto de la entrada y la devuelve recargada.

        new_entry=True cuando el llamador leyó la entrada como inexistente: se
        emite un INSERT sin ON CONFLICT. Si otra transacción creó la fila entre
        medias, la restricción única aborta con IntegrityError en lugar de
        pisar su importe.
        """
        if amount < Decimal("0"):
            raise ValidationFailed(
                f"El balance de {asset} no puede quedar negativo",
                {"asset": asset, "amount": str(amount)},
            )
        if average_buy_price < Decimal("0"):
            raise ValidationFailed(
                f"El precio medio de {asset} no puede ser negativo",
                {"asset": asset, "average_buy_price": str(average_buy_price)},
            )

        dialect = self.db.get_bind().dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Dialecto sin soporte de upsert: {dialect}")

        now = utcnow()
        stmt = insert(BalanceEntry).values(
            user_id=user_id,
            asset=asset,
            amount=amount,
            average_buy_price=average_buy_price,
            updated_at=now,
        )
        if not new_entry:
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "asset"],
                set_={
                    "amount": stmt.excluded.amount,
                    "average_buy_price": stmt.excluded.average_buy_price,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
        await self.db.execute(stmt)

        logger.debug(
            "ledger.upsert",
            user_id=user_id,
            asset=asset,
            new_entry=new_entry,
            amount=str(amount),
            average_buy_price=str(average_buy_price),
        )
        entry = await self.get(user_id, asset)
        if entry is None:
            raise RuntimeError(f"Upsert sin fila resultante para ({user_id}, {asset})")
        return entry
