"""
Notification Service - in-app notifications.

Creates exactly one notification per triggering event for a single computed
recipient, and pushes it to the recipient's notifications topic. Marking as
read is always scoped to the caller's own rows.
"""

import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from helpdesk.core.event_channel import channel
from helpdesk.db.enums import NotificationType, TicketStatus
from helpdesk.db.models import Notification, Ticket
from helpdesk.schemas.events import NotificationCreated, notifications_topic
from helpdesk.schemas.notification import NotificationRead

logger = logging.getLogger(__name__)


# =============================================================================
# Notification CRUD
# =============================================================================


def create_notification(
    db: Session,
    user_id: UUID,
    title: str,
    message: str,
    ticket_id: UUID | None = None,
    type: NotificationType = NotificationType.INFO,
) -> Notification:
    """
    Insert one notification and push it to the recipient's topic.

    Raises:
        SQLAlchemyError: the insert failed (caller decides whether to swallow)
    """
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type.value,
        ticket_id=ticket_id,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)

    channel.publish(
        NotificationCreated(
            topic=notifications_topic(user_id),
            notification=NotificationRead.model_validate(notification),
        )
    )
    return notification


def notify(
    db: Session,
    user_id: UUID,
    title: str,
    message: str,
    ticket_id: UUID | None = None,
    type: NotificationType = NotificationType.INFO,
) -> Notification | None:
    """Best-effort create_notification: failures are logged, never raised."""
    try:
        return create_notification(db, user_id, title, message, ticket_id, type)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Notification insert failed",
            extra={"user_id": str(user_id), "ticket_id": str(ticket_id) if ticket_id else None},
        )
        return None


def list_notifications(
    db: Session,
    user_id: UUID,
    unread_only: bool = False,
    limit: int = 20,
    offset: int = 0,
) -> list[Notification]:
    """Get notifications for user, newest first."""
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return (
        query.order_by(Notification.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_unread_count(db: Session, user_id: UUID) -> int:
    """Get count of unread notifications."""
    return db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    ).count()


def mark_read(db: Session, notification_id: UUID, user_id: UUID) -> Notification | None:
    """Mark one of the caller's notifications as read. Other users' rows are never touched."""
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id,
    ).first()

    if notification and not notification.is_read:
        notification.is_read = True
        db.commit()
        db.refresh(notification)

    return notification


def mark_all_read(db: Session, user_id: UUID) -> int:
    """Mark all of the caller's unread notifications as read. Returns count updated."""
    count = db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    ).update({"is_read": True}, synchronize_session=False)
    db.commit()
    return count


# =============================================================================
# Recipient rules
# =============================================================================


def message_recipient(ticket: Ticket, sender_id: UUID, sender_is_staff: bool) -> UUID | None:
    """The "other side" of a ticket conversation.

    Staff writing on someone else's ticket notify the creator; everyone else
    (usually the creator) notifies the assignee. None when there is nobody to
    notify or the recipient would be the sender.
    """
    if sender_is_staff and ticket.created_by != sender_id:
        recipient = ticket.created_by
    else:
        recipient = ticket.assigned_to
    if recipient is None or recipient == sender_id:
        return None
    return recipient


# =============================================================================
# Notification Triggers (called from ticket/message services)
# =============================================================================


def notify_ticket_status_changed(
    db: Session,
    ticket: Ticket,
    new_status: TicketStatus,
    actor_id: UUID | None,
) -> Notification | None:
    """Tell the ticket creator about a status change made by someone else."""
    if ticket.created_by is None or ticket.created_by == actor_id:
        return None

    return create_notification(
        db=db,
        user_id=ticket.created_by,
        title=f"Ticket #{ticket.number} updated",
        message=f'Status changed to "{new_status.label}"',
        ticket_id=ticket.id,
        type=NotificationType.SUCCESS if new_status == TicketStatus.RESOLVED else NotificationType.INFO,
    )


def notify_ticket_message(
    db: Session,
    ticket: Ticket,
    sender_id: UUID,
    sender_is_staff: bool,
    preview: str,
) -> Notification | None:
    """Tell the other side of the conversation about a new message."""
    recipient = message_recipient(ticket, sender_id, sender_is_staff)
    if recipient is None:
        return None

    return create_notification(
        db=db,
        user_id=recipient,
        title=f"Ticket #{ticket.number}",
        message=preview[:200],
        ticket_id=ticket.id,
    )


def notify_ticket_assigned(
    db: Session,
    ticket: Ticket,
    assignee_id: UUID | None,
    actor_id: UUID | None,
) -> Notification | None:
    """Tell the new assignee, unless they assigned the ticket to themselves."""
    if assignee_id is None or assignee_id == actor_id:
        return None

    return create_notification(
        db=db,
        user_id=assignee_id,
        title=f"Ticket #{ticket.number} assigned",
        message="A ticket has been assigned to you",
        ticket_id=ticket.id,
    )
