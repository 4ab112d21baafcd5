"""
Modelos SQLAlchemy. Importar aquí para que Alembic los detecte en autogenerate.
"""

from models.adjustment import AdminBalanceAdjustment
from models.balance import BalanceEntry
from models.notification import Notification
from models.swap import SwapTransaction
from models.transaction import Transaction

__all__ = [
    "AdminBalanceAdjustment",
    "BalanceEntry",
    "Notification",
    "SwapTransaction",
    "Transaction",
]
