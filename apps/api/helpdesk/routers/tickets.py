"""
Tickets Router - ticket detail, status transitions and assignment.

Status changes go through the state machine; who may request which change
is decided by core.policies before the service is called.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from helpdesk.core.deps import get_current_session, get_db, load_visible_ticket, require_staff
from helpdesk.core.policies import TransitionDenied, can_reassign, ensure_transition_allowed
from helpdesk.schemas.auth import UserSession
from helpdesk.schemas.ticket import (
    FeedbackEligibilityResponse,
    TicketAssignRequest,
    TicketRead,
    TicketStatusChangeRequest,
    TicketStatusChangeResponse,
    TicketStatusHistoryRead,
)
from helpdesk.services import ticket_state_service

router = APIRouter()


def _history_to_read(entry) -> TicketStatusHistoryRead:
    read = TicketStatusHistoryRead.model_validate(entry)
    if entry.changer is not None:
        read.changed_by_name = entry.changer.full_name
    return read


@router.get("/{ticket_id}", response_model=TicketRead)
def get_ticket(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Current ticket row (the snapshot clients re-fetch after reconnecting)."""
    return load_visible_ticket(db, ticket_id, session)


@router.get("/{ticket_id}/history", response_model=list[TicketStatusHistoryRead])
def get_ticket_history(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Status history in creation order."""
    ticket = load_visible_ticket(db, ticket_id, session)
    return [_history_to_read(h) for h in ticket_state_service.list_history(db, ticket.id)]


@router.post("/{ticket_id}/status", response_model=TicketStatusChangeResponse)
def change_ticket_status(
    ticket_id: UUID,
    data: TicketStatusChangeRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """
    Move a ticket to a new status.

    Returns 409 when the ticket changed since the client read it (or is
    closed), 403 when the caller may not request this change and 503 when
    the write failed.
    """
    ticket = load_visible_ticket(db, ticket_id, session)
    try:
        ensure_transition_allowed(session, ticket, data.status)
    except TransitionDenied as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason)

    result = ticket_state_service.transition(
        db,
        ticket,
        data.status,
        actor_id=session.effective_user_id,
        notes=data.notes,
        expected_status=data.expected_status,
    )
    if result["status"] == "conflict":
        raise HTTPException(status_code=409, detail=result["message"])
    if result["status"] == "failed":
        raise HTTPException(status_code=503, detail=result["message"])

    return TicketStatusChangeResponse(
        status=result["status"],
        ticket=TicketRead.model_validate(result["ticket"]),
        history_id=result["history_id"],
        side_effect_errors=result["side_effect_errors"],
    )


@router.post("/{ticket_id}/assignee", response_model=TicketRead)
def assign_ticket(
    ticket_id: UUID,
    data: TicketAssignRequest,
    session: UserSession = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """Reassign (or unassign) a ticket. Staff only; closed tickets are frozen."""
    ticket = load_visible_ticket(db, ticket_id, session)
    if not can_reassign(session, ticket):
        raise HTTPException(status_code=409, detail="Closed tickets cannot be reassigned")
    try:
        return ticket_state_service.reassign(
            db, ticket, data.assignee_id, actor_id=session.effective_user_id
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Could not reassign ticket")


@router.get("/{ticket_id}/feedback-eligibility", response_model=FeedbackEligibilityResponse)
def get_feedback_eligibility(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Whether to show the satisfaction survey prompt to the caller."""
    ticket = load_visible_ticket(db, ticket_id, session)
    user_id = session.effective_user_id
    return FeedbackEligibilityResponse(
        eligible=ticket_state_service.is_feedback_eligible(db, ticket, user_id),
        ticket_status=ticket.status,
        already_surveyed=ticket_state_service.has_surveyed(db, ticket.id, user_id),
    )
