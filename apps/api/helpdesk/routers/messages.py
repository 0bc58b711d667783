"""
Messages Router - ticket chat.

Sending is rate limited per client. Read and delivery receipts are bulk
updates scoped to messages the caller did not write.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from helpdesk.core.deps import get_current_session, get_db, load_visible_ticket
from helpdesk.core.policies import can_chat
from helpdesk.core.rate_limit import MESSAGE_LIMIT, limiter
from helpdesk.schemas.auth import UserSession
from helpdesk.schemas.message import (
    DeliveryAckRequest,
    MessageCreate,
    MessageRead,
    MessageStatusUpdateResponse,
    VoiceNoteCreate,
)
from helpdesk.services import message_service
from helpdesk.services.message_service import EmptyMessageError, MessageSendError

router = APIRouter()


def _load_chat_ticket(db: Session, ticket_id: UUID, session: UserSession):
    ticket = load_visible_ticket(db, ticket_id, session)
    if not can_chat(session, ticket):
        raise HTTPException(status_code=409, detail="Ticket is closed")
    return ticket


@router.get("/{ticket_id}/messages", response_model=list[MessageRead])
def list_messages(
    ticket_id: UUID,
    after_id: int | None = Query(None, ge=0),
    limit: int | None = Query(None, ge=1, le=500),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Conversation in creation order (pass after_id to fetch only newer messages)."""
    ticket = load_visible_ticket(db, ticket_id, session)
    return message_service.list_messages(db, ticket.id, after_id=after_id, limit=limit)


@router.post("/{ticket_id}/messages", response_model=MessageRead, status_code=201)
@limiter.limit(MESSAGE_LIMIT)
def send_message(
    request: Request,
    ticket_id: UUID,
    data: MessageCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Send a text message; invalid attachments are skipped, not rejected."""
    ticket = _load_chat_ticket(db, ticket_id, session)
    try:
        return message_service.send_message(
            db,
            ticket,
            session.effective_user_id,
            data.message,
            data.attachments,
            sender_is_staff=session.is_staff,
        )
    except EmptyMessageError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MessageSendError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{ticket_id}/voice-notes", response_model=MessageRead, status_code=201)
@limiter.limit(MESSAGE_LIMIT)
def send_voice_note(
    request: Request,
    ticket_id: UUID,
    data: VoiceNoteCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Send a voice note already uploaded to object storage."""
    ticket = _load_chat_ticket(db, ticket_id, session)
    try:
        return message_service.send_voice_note(
            db,
            ticket,
            session.effective_user_id,
            data.voice_note_ref,
            sender_is_staff=session.is_staff,
        )
    except EmptyMessageError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MessageSendError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{ticket_id}/messages/read", response_model=MessageStatusUpdateResponse)
def mark_messages_read(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Mark everything the caller did not write as read."""
    ticket = load_visible_ticket(db, ticket_id, session)
    updated = message_service.mark_ticket_read(db, ticket.id, session.effective_user_id)
    return MessageStatusUpdateResponse(updated=updated)


@router.post("/{ticket_id}/messages/delivered", response_model=MessageStatusUpdateResponse)
def acknowledge_delivery(
    ticket_id: UUID,
    data: DeliveryAckRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Client acknowledgement that messages reached the device."""
    ticket = load_visible_ticket(db, ticket_id, session)
    updated = message_service.acknowledge_delivery(
        db, ticket.id, session.effective_user_id, data.message_ids
    )
    return MessageStatusUpdateResponse(updated=updated)
