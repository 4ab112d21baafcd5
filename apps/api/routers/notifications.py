"""
Router: /api/v1/notifications
GET  /              → bandeja del usuario (más recientes primero)
POST /{id}/read     → marca una notificación como leída
"""

import uuid

from fastapi import APIRouter, Depends, Query

from core.dependencies import get_current_user, get_notifier
from core.responses import ok
from core.security import AuthContext
from services.notifications import NotificationEmitter

router = APIRouter()


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    user: AuthContext = Depends(get_current_user),
    notifier: NotificationEmitter = Depends(get_notifier),
) -> dict:
    rows = await notifier.list_for_user(user.user_id, unread_only=unread_only, limit=limit)
    return ok(
        data=[
            {
                "id": str(n.id),
                "type": n.type,
                "title": n.title,
                "message": n.message,
                "metadata": n.extra,
                "read": n.read,
                "created_at": n.created_at.isoformat(),
            }
            for n in rows
        ],
        meta={"unread": sum(1 for n in rows if not n.read)},
    )


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: uuid.UUID,
    user: AuthContext = Depends(get_current_user),
    notifier: NotificationEmitter = Depends(get_notifier),
) -> dict:
    await notifier.mark_read(user.user_id, notification_id)
    return ok(data={"id": str(notification_id), "read": True})
