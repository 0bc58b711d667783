"""Pydantic schemas for in-app notifications."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from helpdesk.db.enums import NotificationType


class NotificationRead(BaseModel):
    """Notification response."""
    id: UUID
    user_id: UUID
    title: str
    message: str
    type: NotificationType
    ticket_id: UUID | None = None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    """Notification list with unread badge count."""
    items: list[NotificationRead]
    unread_count: int


class UnreadCountResponse(BaseModel):
    """Unread count only (for polling)."""
    count: int


class MarkAllReadResponse(BaseModel):
    updated: int
