"""Notification service — writes from the dispatcher, inbox reads for users."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.constants import NotificationType
from expenseflow.common.exceptions import ForbiddenException, NotFoundException
from expenseflow.common.pagination import PaginationParams, paginate
from expenseflow.notifications.models import Notification
from expenseflow.notifications.schemas import InboxMeta, InboxResponse, NotificationOut


class NotificationService:

    # ── Writes ──────────────────────────────────────────────────────

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        type: NotificationType = NotificationType.info,
        title: str,
        message: str,
        action_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        [notification] = await NotificationService.create_many(
            db,
            [(recipient_id, type, title, message)],
            action_url=action_url,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return notification

    @staticmethod
    async def create_many(
        db: AsyncSession,
        messages: Iterable[tuple[uuid.UUID, NotificationType, str, str]],
        *,
        action_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> list[Notification]:
        """Add one row per ``(recipient, type, title, message)`` and flush once.

        A recipient listed twice with the same title gets a single row.
        """
        seen: set[tuple[uuid.UUID, str]] = set()
        rows: list[Notification] = []
        for recipient_id, type_, title, message in messages:
            if (recipient_id, title) in seen:
                continue
            seen.add((recipient_id, title))
            rows.append(Notification(
                recipient_id=recipient_id,
                type=NotificationType(type_).value,
                title=title,
                message=message,
                action_url=action_url,
                entity_type=entity_type,
                entity_id=entity_id,
            ))
        db.add_all(rows)
        await db.flush()
        return rows

    # ── Inbox ───────────────────────────────────────────────────────

    @staticmethod
    async def get_notifications(
        db: AsyncSession,
        user_id: uuid.UUID,
        pagination: PaginationParams,
        *,
        is_read: Optional[bool] = None,
        notification_type: Optional[NotificationType] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> InboxResponse:
        """Newest first; ``meta.unread`` ignores the filters so it can drive a badge."""
        query = (
            select(Notification)
            .where(Notification.recipient_id == user_id)
            .order_by(Notification.created_at.desc())
        )
        if is_read is not None:
            query = query.where(Notification.is_read.is_(is_read))
        if notification_type is not None:
            query = query.where(Notification.type == NotificationType(notification_type).value)
        if entity_id is not None:
            query = query.where(Notification.entity_id == entity_id)

        rows, meta = await paginate(db, query, pagination, model=Notification)
        unread = await NotificationService.get_unread_count(db, user_id)
        return InboxResponse(
            data=[NotificationOut.model_validate(n) for n in rows],
            meta=InboxMeta(**meta.model_dump(), unread=unread),
        )

    @staticmethod
    async def get_unread_count(db: AsyncSession, user_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.recipient_id == user_id, Notification.is_read.is_(False))
        )
        return result.scalar_one()

    @staticmethod
    async def mark_read(
        db: AsyncSession,
        notification_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> Notification:
        notification = await db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundException("Notification", notification_id)
        if notification.recipient_id != user_id:
            raise ForbiddenException("You can only mark your own notifications as read.")

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            await db.flush()
        return notification

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: uuid.UUID) -> int:
        """Returns how many rows flipped to read."""
        result = await db.execute(
            update(Notification)
            .where(Notification.recipient_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=datetime.now(timezone.utc))
        )
        await db.flush()
        return result.rowcount  # type: ignore[return-value]
