"""
Router: /api/v1/admin  (solo rol admin)
GET  /transactions?status=     → cola de revisión de todos los usuarios
POST /transactions/transition  → aprobar / rechazar una solicitud pending
POST /balances/adjust          → ajuste manual de balance con auditoría
GET  /stats                    → pendientes y volumen aprobado
"""

import uuid
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from core.dependencies import get_approval_engine, get_transaction_service, require_admin
from core.responses import ok, page_meta
from core.security import AuthContext
from routers.transactions import tx_to_dict
from services.approval_engine import ApprovalEngine
from services.transaction_service import TransactionService

router = APIRouter()


class TransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: uuid.UUID = Field(alias="transactionId")
    status: Literal["approved", "rejected"]
    admin_notes: str | None = Field(None, max_length=1000, alias="adminNotes")


class AdjustmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(min_length=1, max_length=64, alias="userId")
    asset: str = Field(min_length=2, max_length=10)
    adjustment_type: Literal["add", "subtract"] = Field(alias="adjustmentType")
    usd_amount: Decimal = Field(gt=0, alias="usdAmount")
    reason: str | None = Field(None, max_length=1000)


@router.get("/transactions")
async def list_all_transactions(
    status: str | None = Query("pending"),
    kind: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    _admin: AuthContext = Depends(require_admin),
    service: TransactionService = Depends(get_transaction_service),
) -> dict:
    rows, total = await service.list(user_id=user_id, status=status, kind=kind, page=page, limit=limit)
    return ok(
        data=[{**tx_to_dict(tx), "user_email": tx.user_email} for tx in rows],
        meta=page_meta(page, limit, total),
    )


@router.post("/transactions/transition")
async def transition_transaction(
    body: TransitionRequest,
    admin: AuthContext = Depends(require_admin),
    service: TransactionService = Depends(get_transaction_service),
) -> dict:
    """
    Aplica la decisión del admin. Si la aprobación falla la solicitud
    sigue en pending y puede reintentarse.
    """
    tx = await service.transition(body.transaction_id, body.status, admin, body.admin_notes)
    return ok(data=tx_to_dict(tx))


@router.post("/balances/adjust")
async def adjust_balance(
    body: AdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    engine: ApprovalEngine = Depends(get_approval_engine),
) -> dict:
    result = await engine.adjust_balance(
        admin,
        user_id=body.user_id,
        asset=body.asset,
        adjustment_type=body.adjustment_type,
        usd_amount=body.usd_amount,
        reason=body.reason,
    )
    return ok(
        data={
            "adjustment_id": str(result.adjustment.id),
            "transaction": tx_to_dict(result.transaction),
            "price_usd": str(result.adjustment.price_usd),
            "crypto_amount": str(result.adjustment.crypto_amount),
            "balance": {
                "asset": result.balance.asset,
                "amount": str(result.balance.amount),
                "average_buy_price": str(result.balance.average_buy_price),
            },
        }
    )


@router.get("/stats")
async def get_stats(
    _admin: AuthContext = Depends(require_admin),
    service: TransactionService = Depends(get_transaction_service),
) -> dict:
    stats = await service.stats()
    return ok(data={k: str(v) if isinstance(v, Decimal) else v for k, v in stats.items()})
