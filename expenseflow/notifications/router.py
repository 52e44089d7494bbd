"""Notification endpoints — the signed-in user's inbox."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.auth.dependencies import require_permission
from expenseflow.common.constants import NotificationType
from expenseflow.common.pagination import PaginationParams
from expenseflow.database import get_db
from expenseflow.notifications.schemas import (
    CountOut,
    CountResponse,
    InboxResponse,
    NotificationOut,
    NotificationReadResponse,
)
from expenseflow.notifications.service import NotificationService
from expenseflow.users.models import User

router = APIRouter(prefix="", tags=["notifications"])

_inbox_user = require_permission("notification:read_own")


# ── GET / ────────────────────────────────────────────────────────────

@router.get("/", response_model=InboxResponse)
async def list_notifications(
    is_read: Optional[bool] = Query(None),
    type: Optional[NotificationType] = Query(None),
    entity_id: Optional[uuid.UUID] = Query(None, description="Only notifications about this expense or site"),
    pagination: PaginationParams = Depends(),
    user: User = Depends(_inbox_user),
    db: AsyncSession = Depends(get_db),
):
    return await NotificationService.get_notifications(
        db,
        user.id,
        pagination,
        is_read=is_read,
        notification_type=type,
        entity_id=entity_id,
    )


# ── GET /unread-count ────────────────────────────────────────────────
# Static paths are declared ahead of /{notification_id}/read.

@router.get("/unread-count", response_model=CountResponse, response_model_exclude_none=True)
async def unread_count(
    user: User = Depends(_inbox_user),
    db: AsyncSession = Depends(get_db),
):
    count = await NotificationService.get_unread_count(db, user.id)
    return CountResponse(data=CountOut(count=count))


# ── POST /read-all ───────────────────────────────────────────────────

@router.post("/read-all", response_model=CountResponse)
async def mark_all_read(
    user: User = Depends(_inbox_user),
    db: AsyncSession = Depends(get_db),
):
    count = await NotificationService.mark_all_read(db, user.id)
    await db.commit()
    return CountResponse(message="All notifications marked as read", data=CountOut(count=count))


# ── POST /{notification_id}/read ─────────────────────────────────────

@router.post("/{notification_id}/read", response_model=NotificationReadResponse)
async def mark_read(
    notification_id: uuid.UUID,
    user: User = Depends(_inbox_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await NotificationService.mark_read(db, notification_id, user.id)
    await db.commit()
    return NotificationReadResponse(
        message="Notification marked as read",
        data=NotificationOut.model_validate(notification),
    )
