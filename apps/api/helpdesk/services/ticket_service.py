"""Ticket lookup and creation helpers shared by the realtime services."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from helpdesk.db.enums import TicketPriority, TicketStatus
from helpdesk.db.models import Ticket


class TicketNotFoundError(LookupError):
    """No ticket with the given id."""


def get_ticket(db: Session, ticket_id: UUID) -> Ticket | None:
    return db.query(Ticket).filter(Ticket.id == ticket_id).first()


def get_ticket_or_raise(db: Session, ticket_id: UUID) -> Ticket:
    ticket = get_ticket(db, ticket_id)
    if ticket is None:
        raise TicketNotFoundError(str(ticket_id))
    return ticket


def next_ticket_number(db: Session) -> int:
    """Next human-readable ticket number (max + 1)."""
    current = db.query(func.max(Ticket.number)).scalar()
    return (current or 0) + 1


def create_ticket(
    db: Session,
    title: str,
    created_by: UUID | None,
    *,
    description: str | None = None,
    priority: TicketPriority = TicketPriority.MEDIUM,
    assigned_to: UUID | None = None,
    department_id: UUID | None = None,
) -> Ticket:
    """
    Insert a new open ticket.

    Intake forms live outside the realtime core; this is the write they end
    with. No history row is written: the first history entry is the first
    transition.
    """
    ticket = Ticket(
        number=next_ticket_number(db),
        title=title,
        description=description,
        status=TicketStatus.OPEN.value,
        priority=priority.value,
        created_by=created_by,
        assigned_to=assigned_to,
        department_id=department_id,
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket
