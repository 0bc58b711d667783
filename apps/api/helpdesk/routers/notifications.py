"""
Notifications Router - /me/notifications endpoints.

Every query is scoped to the caller's own notifications.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from helpdesk.core.deps import get_current_session, get_db
from helpdesk.schemas.auth import UserSession
from helpdesk.schemas.notification import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationRead,
    UnreadCountResponse,
)
from helpdesk.services import notification_service


router = APIRouter()


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Get user's notifications, newest first."""
    notifications = notification_service.list_notifications(
        db=db,
        user_id=session.effective_user_id,
        unread_only=unread_only,
        limit=limit,
        offset=offset,
    )
    unread_count = notification_service.get_unread_count(db, session.effective_user_id)
    return NotificationListResponse(
        items=[NotificationRead.model_validate(n) for n in notifications],
        unread_count=unread_count,
    )


@router.get("/notifications/count", response_model=UnreadCountResponse)
def get_unread_count(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Get unread notification count (for polling)."""
    return UnreadCountResponse(
        count=notification_service.get_unread_count(db, session.effective_user_id)
    )


@router.patch("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Mark a single notification as read."""
    notification = notification_service.mark_read(
        db, notification_id, session.effective_user_id
    )
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.post("/notifications/read-all", response_model=MarkAllReadResponse)
def mark_all_notifications_read(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Mark all of the caller's notifications as read."""
    updated = notification_service.mark_all_read(db, session.effective_user_id)
    return MarkAllReadResponse(updated=updated)
