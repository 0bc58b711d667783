"""
Ticket chat pipeline.

Messages are append-only and ordered by creation time. Each message carries a
delivery status that only moves forward:

    sent  ->  delivered  ->  read

- sent: inserted by send_message / send_voice_note
- delivered: the recipient's client acknowledged receipt (acknowledge_delivery)
- read: someone other than the sender viewed the ticket (mark_ticket_read)

System messages (status changes, reassignments) have no sender and are
excluded from receipts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from helpdesk.core.config import settings
from helpdesk.core.event_channel import channel
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import MessageStatus
from helpdesk.db.models import Ticket, TicketAttachment, TicketMessage
from helpdesk.schemas.events import MessageInserted, MessageUpdated, ticket_topic
from helpdesk.schemas.message import AttachmentIn, MessageRead
from helpdesk.services import notification_service
from helpdesk.services.side_effects import SideEffectQueue
from helpdesk.utils.time import utc_now

logger = logging.getLogger(__name__)

ATTACHMENT_BODY = "Attachment"
VOICE_NOTE_BODY = "Voice note"


class MessageSendError(Exception):
    """The message could not be stored; nothing was sent."""


class EmptyMessageError(MessageSendError):
    """Nothing to send: no text, no valid attachment and no voice note."""


# =============================================================================
# Helpers
# =============================================================================


def to_message_read(message: TicketMessage) -> MessageRead:
    return MessageRead.model_validate(message)


def publish_message_inserted(message: TicketMessage) -> None:
    channel.publish(
        MessageInserted(
            topic=ticket_topic(message.ticket_id),
            ticket_id=message.ticket_id,
            message=to_message_read(message),
        )
    )


def _publish_status_update(
    ticket_id: UUID, message_ids: list[int], status: MessageStatus, actor_id: UUID
) -> None:
    channel.publish(
        MessageUpdated(
            topic=ticket_topic(ticket_id),
            ticket_id=ticket_id,
            message_ids=message_ids,
            status=status,
            actor_id=actor_id,
        )
    )


def validate_attachments(
    attachments: Iterable[AttachmentIn | dict],
) -> tuple[list[AttachmentIn], list[str]]:
    """Split attachment descriptors into accepted ones and rejection reasons."""
    accepted: list[AttachmentIn] = []
    rejected: list[str] = []
    allowed_types = settings.attachment_allowed_types

    for raw in attachments:
        try:
            item = raw if isinstance(raw, AttachmentIn) else AttachmentIn.model_validate(raw)
        except ValidationError as exc:
            rejected.append(f"invalid attachment: {exc.error_count()} error(s)")
            continue
        if item.file_type not in allowed_types:
            rejected.append(f"{item.file_name}: type {item.file_type} not allowed")
            continue
        if item.file_size > settings.ATTACHMENT_MAX_BYTES:
            rejected.append(f"{item.file_name}: larger than {settings.ATTACHMENT_MAX_BYTES} bytes")
            continue
        accepted.append(item)

    return accepted, rejected


def _store_attachments(
    db: Session,
    message: TicketMessage,
    attachments: Sequence[AttachmentIn],
    uploaded_by: UUID,
) -> int:
    """Persist each attachment on its own; a failed row does not affect the others."""
    stored = 0
    for item in attachments:
        try:
            db.add(
                TicketAttachment(
                    ticket_id=message.ticket_id,
                    message_id=message.id,
                    file_name=item.file_name,
                    file_path=item.file_path,
                    file_size=item.file_size,
                    file_type=item.file_type,
                    uploaded_by=uploaded_by,
                )
            )
            db.commit()
            stored += 1
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Attachment %s could not be linked to message %s", item.file_name, message.id
            )
    return stored


# =============================================================================
# Send
# =============================================================================


def send_message(
    db: Session,
    ticket: Ticket,
    sender_id: UUID,
    body: str | None,
    attachments: Iterable[AttachmentIn | dict] = (),
    *,
    voice_note_ref: str | None = None,
    sender_is_staff: bool = False,
) -> TicketMessage:
    """
    Append a chat message to a ticket.

    The message row is committed first; attachments are then linked one by one,
    the other side of the conversation is notified and the insert is broadcast
    on the ticket topic. Only the message insert can fail the call.

    Raises:
        MessageSendError: empty message or the insert failed
    """
    text = (body or "").strip()
    accepted, rejected = validate_attachments(attachments)
    for reason in rejected:
        logger.warning("Skipping attachment (%s)", reason)

    if not text and not accepted and not voice_note_ref:
        raise EmptyMessageError("Message is empty")

    if voice_note_ref:
        text = text or VOICE_NOTE_BODY
        preview = "New voice note"
    elif text:
        preview = text
    else:
        text = ATTACHMENT_BODY
        preview = "New attachment"

    message = TicketMessage(
        ticket_id=ticket.id,
        sender_id=sender_id,
        message=text,
        is_system_message=False,
        voice_note_ref=voice_note_ref,
        status=MessageStatus.SENT.value,
    )
    try:
        db.add(message)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "Message insert failed",
            extra=build_log_context(user_id=sender_id, ticket_id=ticket.id),
        )
        raise MessageSendError("Could not send message") from exc

    if accepted:
        _store_attachments(db, message, accepted, sender_id)
    db.refresh(message)

    effects = SideEffectQueue(db, context=build_log_context(user_id=sender_id, ticket_id=ticket.id))
    effects.enqueue("publish_message_inserted", publish_message_inserted, message)
    effects.enqueue(
        "notify_ticket_message",
        notification_service.notify_ticket_message,
        db,
        ticket,
        sender_id,
        sender_is_staff,
        preview,
    )
    effects.run()
    return message


def send_voice_note(
    db: Session,
    ticket: Ticket,
    sender_id: UUID,
    voice_note_ref: str,
    *,
    sender_is_staff: bool = False,
) -> TicketMessage:
    """Send a recorded voice note already uploaded to object storage."""
    if not voice_note_ref or not voice_note_ref.strip():
        raise EmptyMessageError("Voice note reference is required")
    return send_message(
        db,
        ticket,
        sender_id,
        None,
        voice_note_ref=voice_note_ref.strip(),
        sender_is_staff=sender_is_staff,
    )


def append_system_message(db: Session, ticket: Ticket, text: str) -> TicketMessage:
    """
    Append a platform-authored message (no sender) and broadcast it.

    Raises:
        SQLAlchemyError: the insert failed
    """
    message = TicketMessage(
        ticket_id=ticket.id,
        sender_id=None,
        message=text,
        is_system_message=True,
        status=MessageStatus.SENT.value,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    publish_message_inserted(message)
    return message


# =============================================================================
# Receipts
# =============================================================================


def _others_messages(db: Session, ticket_id: UUID, user_id: UUID):
    """Non-system messages in a ticket that the user did not write."""
    return db.query(TicketMessage).filter(
        TicketMessage.ticket_id == ticket_id,
        TicketMessage.is_system_message.is_(False),
        or_(TicketMessage.sender_id.is_(None), TicketMessage.sender_id != user_id),
    )


def _advance_status(
    db: Session,
    message_ids: list[int],
    guard,
    status: MessageStatus,
    stamp_column,
) -> list[int]:
    """
    Move the given messages to ``status`` where ``guard`` still holds.

    Returns the ids this update changed. Uses UPDATE ... RETURNING where the
    backend has it; otherwise re-selects the rows carrying this call's stamp.
    """
    now = utc_now()
    stmt = (
        update(TicketMessage)
        .where(TicketMessage.id.in_(message_ids), guard)
        .values({TicketMessage.status: status.value, stamp_column: now})
        .execution_options(synchronize_session=False)
    )
    if db.get_bind().dialect.update_returning:
        changed = list(db.execute(stmt.returning(TicketMessage.id)).scalars())
    else:
        db.execute(stmt)
        changed = list(
            db.execute(
                select(TicketMessage.id).where(
                    TicketMessage.id.in_(message_ids),
                    TicketMessage.status == status.value,
                    stamp_column == now,
                )
            ).scalars()
        )
    db.commit()
    return sorted(changed)


def mark_ticket_read(db: Session, ticket_id: UUID, reader_id: UUID) -> int:
    """
    Mark every unread message in the ticket that the reader did not send as read.

    One batch update keyed by "unread, not mine". Idempotent: with nothing new
    to read it changes no rows and publishes nothing. The update event lists
    only the rows this call changed. Returns rows updated.
    """
    unread = _others_messages(db, ticket_id, reader_id).filter(
        TicketMessage.status != MessageStatus.READ.value
    )
    candidates = [row.id for row in unread.with_entities(TicketMessage.id).all()]
    if not candidates:
        return 0

    changed = _advance_status(
        db,
        candidates,
        TicketMessage.status != MessageStatus.READ.value,
        MessageStatus.READ,
        TicketMessage.read_at,
    )
    if changed:
        _publish_status_update(ticket_id, changed, MessageStatus.READ, reader_id)
    return len(changed)


def acknowledge_delivery(
    db: Session,
    ticket_id: UUID,
    recipient_id: UUID,
    message_ids: Sequence[int] | None = None,
) -> int:
    """
    Move messages from sent to delivered after the recipient's client received them.

    Only ``sent`` rows change, so read messages never move backwards. Returns
    rows updated.
    """
    pending = _others_messages(db, ticket_id, recipient_id).filter(
        TicketMessage.status == MessageStatus.SENT.value
    )
    if message_ids is not None:
        if not message_ids:
            return 0
        pending = pending.filter(TicketMessage.id.in_(list(message_ids)))

    candidates = [row.id for row in pending.with_entities(TicketMessage.id).all()]
    if not candidates:
        return 0

    changed = _advance_status(
        db,
        candidates,
        TicketMessage.status == MessageStatus.SENT.value,
        MessageStatus.DELIVERED,
        TicketMessage.delivered_at,
    )
    if changed:
        _publish_status_update(ticket_id, changed, MessageStatus.DELIVERED, recipient_id)
    return len(changed)


# =============================================================================
# Reads
# =============================================================================


def list_messages(
    db: Session,
    ticket_id: UUID,
    after_id: int | None = None,
    limit: int | None = None,
) -> list[TicketMessage]:
    """Messages in creation order, with attachments loaded."""
    query = (
        db.query(TicketMessage)
        .options(selectinload(TicketMessage.attachments))
        .filter(TicketMessage.ticket_id == ticket_id)
    )
    if after_id is not None:
        query = query.filter(TicketMessage.id > after_id)
    query = query.order_by(TicketMessage.created_at.asc(), TicketMessage.id.asc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def count_unread(db: Session, ticket_id: UUID, user_id: UUID) -> int:
    return _others_messages(db, ticket_id, user_id).filter(
        TicketMessage.status != MessageStatus.READ.value
    ).count()


# =============================================================================
# Client-side reconciliation
# =============================================================================


def _forward_status(current: MessageStatus, incoming: MessageStatus) -> MessageStatus:
    return incoming if incoming.rank > current.rank else current


def merge_message(local: list[MessageRead], incoming: MessageRead) -> list[MessageRead]:
    """
    Fold one message from the event stream into a locally fetched list.

    New messages are appended without re-sorting (the ticket topic preserves
    commit order); a duplicate delivery replaces the existing entry but never
    lets its status go backwards.
    """
    for index, existing in enumerate(local):
        if existing.id == incoming.id:
            status = _forward_status(existing.status, incoming.status)
            merged = list(local)
            merged[index] = incoming.model_copy(update={"status": status})
            return merged
    return [*local, incoming]


def apply_status_update(
    local: list[MessageRead], message_ids: Iterable[int], status: MessageStatus
) -> list[MessageRead]:
    """Apply a message_updated event to a local list (monotonic per message)."""
    targets = set(message_ids)
    return [
        m.model_copy(update={"status": _forward_status(m.status, status)}) if m.id in targets else m
        for m in local
    ]
