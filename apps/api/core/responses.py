"""
Envelope { data, error, meta } de la API del ledger.

Los routers devuelven ok(...); los exception handlers de main.py construyen
los errores con err(...) o, para errores de dominio, con ledger_err(...),
que expone el código estable en meta.code.
"""

from typing import Any

from core.exceptions import LedgerError


def ok(data: Any = None, meta: dict | None = None) -> dict:
    return {"data": data, "error": None, "meta": meta or {}}


def page_meta(page: int, limit: int, total: int) -> dict:
    """meta de un listado paginado: page, limit, total y pages (mínimo 1)."""
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": max(1, -(-total // limit)),  # ceil division
    }


def err(message: str, meta: dict | None = None) -> dict:
    return {"data": None, "error": message, "meta": meta or {}}


def ledger_err(exc: LedgerError) -> dict:
    meta: dict[str, Any] = {"code": exc.code}
    if exc.details:
        meta["details"] = exc.details
    return err(exc.message, meta=meta)
