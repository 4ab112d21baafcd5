"""
Router: /api/v1/transactions
POST /deposits     → solicitud de depósito (queda en pending)
POST /withdrawals  → solicitud de retiro (queda en pending)
GET  /             → historial propio paginado con filtros
GET  /export       → descarga CSV del historial filtrado
"""

import csv
import io
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from core.dependencies import get_current_user, get_transaction_service
from core.responses import ok, page_meta
from core.security import AuthContext
from models.transaction import TRANSACTION_KINDS, TRANSACTION_STATUSES, Transaction
from services.transaction_service import TransactionService

router = APIRouter()

EXPORT_LIMIT = 10_000


class DepositRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset: str = Field(min_length=2, max_length=10)
    usd_amount: Decimal = Field(gt=0, alias="usdAmount")
    crypto_amount: Decimal | None = Field(None, gt=0, alias="cryptoAmount")
    payment_proof_ref: str = Field(min_length=1, alias="paymentProofUrl")
    payment_method: str | None = Field(None, max_length=50, alias="paymentMethod")


class WithdrawalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset: str = Field(min_length=2, max_length=10)
    crypto_amount: Decimal = Field(gt=0, alias="cryptoAmount")
    wallet_address: str = Field(min_length=1, alias="walletAddress")


@router.post("/deposits", status_code=status.HTTP_201_CREATED)
async def submit_deposit(
    body: DepositRequest,
    user: AuthContext = Depends(get_current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> dict:
    tx = await service.submit_deposit(
        user,
        usd_amount=body.usd_amount,
        asset=body.asset,
        payment_proof_ref=body.payment_proof_ref,
        crypto_amount=body.crypto_amount,
        payment_method=body.payment_method,
    )
    return ok(data=tx_to_dict(tx))


@router.post("/withdrawals", status_code=status.HTTP_201_CREATED)
async def submit_withdrawal(
    body: WithdrawalRequest,
    user: AuthContext = Depends(get_current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> dict:
    tx = await service.submit_withdrawal(
        user,
        crypto_amount=body.crypto_amount,
        asset=body.asset,
        wallet_address=body.wallet_address,
    )
    return ok(data=tx_to_dict(tx))


@router.get("")
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    kind: str | None = Query(None, description=f"Filtro por tipo: {TRANSACTION_KINDS}"),
    status: str | None = Query(None, description=f"Filtro por estado: {TRANSACTION_STATUSES}"),
    asset: str | None = Query(None, description="Filtro por activo, e.g. BTC"),
    user: AuthContext = Depends(get_current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> dict:
    """
    Historial paginado de transacciones del usuario.
    meta incluye: page, limit, total, pages.
    """
    rows, total = await service.list(
        user_id=user.user_id, status=status, kind=kind, asset=asset, page=page, limit=limit
    )
    return ok(
        data=[tx_to_dict(tx) for tx in rows],
        meta=page_meta(page, limit, total),
    )


@router.get("/export")
async def export_transactions(
    kind: str | None = Query(None),
    status: str | None = Query(None),
    asset: str | None = Query(None),
    user: AuthContext = Depends(get_current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> StreamingResponse:
    """Exporta las transacciones filtradas del usuario como CSV."""
    rows, _ = await service.list(
        user_id=user.user_id, status=status, kind=kind, asset=asset, page=1, limit=EXPORT_LIMIT
    )

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "id", "kind", "asset", "crypto_amount", "usd_value",
        "status", "source", "payment_method", "admin_notes",
        "created_at", "approved_at",
    ])
    for tx in rows:
        writer.writerow([
            str(tx.id), tx.kind, tx.asset,
            str(tx.crypto_amount), str(tx.usd_value),
            tx.status, tx.source, tx.payment_method or "", tx.admin_notes or "",
            tx.created_at.isoformat(),
            tx.approved_at.isoformat() if tx.approved_at else "",
        ])

    output.seek(0)
    filename = f"transactions_{date.today()}.csv"
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def tx_to_dict(tx: Transaction) -> dict:
    return {
        "id": str(tx.id),
        "user_id": tx.user_id,
        "kind": tx.kind,
        "asset": tx.asset,
        "crypto_amount": str(tx.crypto_amount),
        "usd_value": str(tx.usd_value),
        "status": tx.status,
        "source": tx.source,
        "payment_proof_ref": tx.payment_proof_ref,
        "payment_method": tx.payment_method,
        "admin_notes": tx.admin_notes,
        "approved_by": tx.approved_by,
        "approved_at": tx.approved_at.isoformat() if tx.approved_at else None,
        "created_at": tx.created_at.isoformat(),
    }
