"""
Ticket access policies.

The services record whatever they are asked to; these checks decide what a
session may ask for. Routers call them before touching a service.
"""

from __future__ import annotations

from helpdesk.db.enums import TicketStatus
from helpdesk.db.models import Ticket
from helpdesk.schemas.auth import UserSession
from helpdesk.services.ticket_state_service import is_valid_transition

# Transitions a non-staff ticket creator may request on their own ticket
CREATOR_TRANSITIONS = frozenset(
    {
        (TicketStatus.RESOLVED, TicketStatus.CLOSED),  # confirm the fix
        (TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS),  # not fixed after all
    }
)


def is_participant(session: UserSession, ticket: Ticket) -> bool:
    uid = session.effective_user_id
    return ticket.created_by == uid or ticket.assigned_to == uid


def can_view_ticket(session: UserSession, ticket: Ticket) -> bool:
    return session.is_staff or is_participant(session, ticket)


def can_chat(session: UserSession, ticket: Ticket) -> bool:
    """Closed tickets are read-only for everyone."""
    return can_view_ticket(session, ticket) and ticket.status != TicketStatus.CLOSED.value


def can_reassign(session: UserSession, ticket: Ticket) -> bool:
    return session.is_staff and ticket.status != TicketStatus.CLOSED.value


class TransitionDenied(Exception):
    """The session may not request this transition (status_code is the HTTP mapping)."""

    def __init__(self, reason: str, status_code: int):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def ensure_transition_allowed(
    session: UserSession, ticket: Ticket, new_status: TicketStatus
) -> None:
    """
    Raises:
        TransitionDenied: 409 from a terminal status, 422 off-graph, 403 by role
    """
    current = TicketStatus(ticket.status)
    new_status = TicketStatus(new_status)
    if current == new_status:
        return
    if current == TicketStatus.CLOSED:
        raise TransitionDenied("Closed tickets cannot change status", 409)
    if not is_valid_transition(current, new_status):
        raise TransitionDenied(
            f"Cannot move ticket from {current.value} to {new_status.value}", 422
        )
    if session.is_staff:
        return
    if ticket.created_by == session.effective_user_id and (current, new_status) in CREATOR_TRANSITIONS:
        return
    raise TransitionDenied("Not allowed to change the status of this ticket", 403)


def check_transition(
    session: UserSession, ticket: Ticket, new_status: TicketStatus
) -> str | None:
    """Return a reason string if the session may not request this transition."""
    try:
        ensure_transition_allowed(session, ticket, new_status)
    except TransitionDenied as exc:
        return exc.reason
    return None
