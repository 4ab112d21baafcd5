"""
Taxonomía de errores del ledger.

Cada error lleva un `code` estable (lo que ve el cliente en meta.code) y el
status HTTP al que lo traduce el exception handler global de main.py.
Ninguno es fatal para el proceso: todos dejan ledger y transacción en un
estado consistente y reintentable.
"""

from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    code: str = "ledger_error"
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationFailed(LedgerError):
    """Entrada mal formada: campos ausentes, importes no positivos, activo no soportado."""

    code = "validation_failed"
    status_code = 422


class PriceUnavailable(ValidationFailed):
    """No hay precio de mercado en vivo para una operación que lo exige."""

    code = "price_unavailable"


class ConversionMismatch(LedgerError):
    code = "conversion_mismatch"
    status_code = 422


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"
    status_code = 409

    def __init__(
        self,
        asset: str,
        required: Decimal,
        available: Decimal,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Balance insuficiente de {asset}: disponible {available}, requerido {required}",
            {"asset": asset, "required": str(required), "available": str(available)},
        )


class AlreadyTerminal(LedgerError):
    code = "already_terminal"
    status_code = 409

    def __init__(self, transaction_id: Any, status: str) -> None:
        super().__init__(
            f"La transacción {transaction_id} ya está en estado terminal: {status}",
            {"transaction_id": str(transaction_id), "status": status},
        )


class ApprovalFailed(LedgerError):
    """Fallo de persistencia en la escritura atómica ledger + estado. Reintentable."""

    code = "approval_failed"
    status_code = 500


class Forbidden(LedgerError):
    code = "forbidden"
    status_code = 403
