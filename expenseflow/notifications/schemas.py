"""Notification schemas — inbox listing, badge count and read receipts."""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from expenseflow.common.constants import NotificationType
from expenseflow.common.pagination import PaginationMeta


class NotificationOut(BaseModel):
    """One inbox entry; ``entity_type``/``entity_id`` point at the expense or site."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[uuid.UUID] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class InboxMeta(PaginationMeta):
    unread: int


class InboxResponse(BaseModel):
    data: List[NotificationOut]
    meta: InboxMeta


class CountOut(BaseModel):
    count: int


class CountResponse(BaseModel):
    message: Optional[str] = None
    data: CountOut


class NotificationReadResponse(BaseModel):
    message: str
    data: NotificationOut
