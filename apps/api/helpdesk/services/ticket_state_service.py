"""
Ticket status state machine.

    open → in_progress → resolved → closed
    in_progress → open, resolved → in_progress (back-edges)
    closed is terminal

A transition writes the status change and its history row together, guarded by
a compare-and-swap on the status the caller saw, then runs three best-effort
side effects: a system message in the chat, a notification to the creator and
a ticket_updated event. Which transitions a given user may request is decided
by core.policies; this module records what it is asked to.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TypedDict
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from helpdesk.core.event_channel import channel
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import FEEDBACK_STATUSES, TicketStatus
from helpdesk.db.models import SatisfactionSurvey, Ticket, TicketStatusHistory, User
from helpdesk.schemas.events import TicketUpdated, ticket_topic
from helpdesk.schemas.ticket import TicketRead
from helpdesk.services import message_service, notification_service
from helpdesk.services.side_effects import SideEffectQueue
from helpdesk.utils.time import utc_now

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.RESOLVED, TicketStatus.OPEN}),
    TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.IN_PROGRESS}),
    TicketStatus.CLOSED: frozenset(),
}


class TransitionResult(TypedDict):
    """Result of a status transition.

    status:
        applied    status and history written
        unchanged  requested status equals the current one; nothing written
        conflict   the ticket moved since the caller read it; nothing written
        failed     the store rejected the write; nothing written
    """

    status: str
    ticket: Ticket
    history_id: int | None
    message: str | None
    side_effect_errors: list[str]


def is_valid_transition(old: TicketStatus | str, new: TicketStatus | str) -> bool:
    return TicketStatus(new) in ALLOWED_TRANSITIONS[TicketStatus(old)]


def is_valid_walk(steps: Sequence[tuple[str | None, str]]) -> bool:
    """Check (old_status, new_status) pairs in creation order form a walk of the graph.

    Only the first step may omit old_status, and such a creation step must land
    on open.
    """
    previous: str | None = None
    for index, (old, new) in enumerate(steps):
        if old is None:
            if index != 0 or TicketStatus(new) != TicketStatus.OPEN:
                return False
        else:
            if index > 0 and old != previous:
                return False
            if not is_valid_transition(old, new):
                return False
        previous = new
    return True


def describe_transition(old: TicketStatus, new: TicketStatus) -> str:
    return f'Status changed from "{old.label}" to "{new.label}"'


def publish_ticket_updated(ticket: Ticket, change: str, actor_id: UUID | None) -> None:
    channel.publish(
        TicketUpdated(
            topic=ticket_topic(ticket.id),
            ticket=TicketRead.model_validate(ticket),
            change=change,
            actor_id=actor_id,
        )
    )


def _result(
    status: str,
    ticket: Ticket,
    message: str | None = None,
    history_id: int | None = None,
    errors: list[str] | None = None,
) -> TransitionResult:
    return TransitionResult(
        status=status,
        ticket=ticket,
        history_id=history_id,
        message=message,
        side_effect_errors=errors or [],
    )


# =============================================================================
# Transition
# =============================================================================


def transition(
    db: Session,
    ticket: Ticket,
    new_status: TicketStatus | str,
    actor_id: UUID | None,
    notes: str | None = None,
    expected_status: TicketStatus | str | None = None,
) -> TransitionResult:
    """
    Move a ticket to a new status and record it.

    The history row and the status update (with first-time resolved_at /
    closed_at stamps) commit together or not at all. The update only matches
    while the ticket still has the status this call read, so two concurrent
    writers cannot both apply a change from the same old status.

    Returns:
        TransitionResult; side-effect failures are listed but do not change
        an applied result.
    """
    new = TicketStatus(new_status)
    current = TicketStatus(ticket.status)
    log_context = build_log_context(user_id=actor_id, ticket_id=ticket.id)

    if expected_status is not None and TicketStatus(expected_status) != current:
        return _result(
            "conflict",
            ticket,
            f"Ticket is {current.value}, expected {TicketStatus(expected_status).value}",
        )

    if new == current:
        return _result("unchanged", ticket)

    now = utc_now()
    values: dict = {Ticket.status: new.value, Ticket.updated_at: now}
    # Stamps are set once at the store level and never cleared by later moves
    if new == TicketStatus.RESOLVED:
        values[Ticket.resolved_at] = func.coalesce(Ticket.resolved_at, now)
    if new == TicketStatus.CLOSED:
        values[Ticket.closed_at] = func.coalesce(Ticket.closed_at, now)

    try:
        result = db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id, Ticket.status == current.value)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            db.refresh(ticket)
            logger.info(
                "Stale status transition rejected (%s -> %s)",
                current.value,
                new.value,
                extra=log_context,
            )
            return _result(
                "conflict",
                ticket,
                f"Ticket status changed concurrently; now {ticket.status}",
            )

        history = TicketStatusHistory(
            ticket_id=ticket.id,
            old_status=current.value,
            new_status=new.value,
            changed_by=actor_id,
            notes=notes,
            created_at=now,
        )
        db.add(history)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Status transition failed", extra=log_context)
        return _result("failed", ticket, "Could not update ticket status")

    history_id = history.id
    db.refresh(ticket)
    logger.info(
        "Ticket #%s status %s -> %s", ticket.number, current.value, new.value, extra=log_context
    )

    effects = SideEffectQueue(db, context=log_context)
    effects.enqueue(
        "system_message",
        message_service.append_system_message,
        db,
        ticket,
        describe_transition(current, new),
    )
    effects.enqueue(
        "notify_status_changed",
        notification_service.notify_ticket_status_changed,
        db,
        ticket,
        new,
        actor_id,
    )
    effects.enqueue("publish_ticket_updated", publish_ticket_updated, ticket, "status", actor_id)
    errors = effects.run()

    return _result("applied", ticket, history_id=history_id, errors=errors)


# =============================================================================
# Reassignment
# =============================================================================


def reassign(
    db: Session,
    ticket: Ticket,
    assignee_id: UUID | None,
    actor_id: UUID | None,
) -> Ticket:
    """
    Change (or clear) the ticket's assignee.

    Raises:
        ValueError: assignee does not exist or is inactive
        SQLAlchemyError: the update failed
    """
    if ticket.assigned_to == assignee_id:
        return ticket

    assignee = None
    if assignee_id is not None:
        assignee = db.query(User).filter(User.id == assignee_id, User.is_active.is_(True)).first()
        if assignee is None:
            raise ValueError("Assignee not found or inactive")

    ticket.assigned_to = assignee_id
    ticket.updated_at = utc_now()
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(ticket)

    text = f"Ticket reassigned to {assignee.full_name}" if assignee else "Ticket unassigned"
    effects = SideEffectQueue(db, context=build_log_context(user_id=actor_id, ticket_id=ticket.id))
    effects.enqueue("system_message", message_service.append_system_message, db, ticket, text)
    effects.enqueue(
        "notify_assigned",
        notification_service.notify_ticket_assigned,
        db,
        ticket,
        assignee_id,
        actor_id,
    )
    effects.enqueue("publish_ticket_updated", publish_ticket_updated, ticket, "assignee", actor_id)
    effects.run()
    return ticket


# =============================================================================
# Reads
# =============================================================================


def list_history(db: Session, ticket_id: UUID) -> list[TicketStatusHistory]:
    """Status history in creation order."""
    return (
        db.query(TicketStatusHistory)
        .options(selectinload(TicketStatusHistory.changer))
        .filter(TicketStatusHistory.ticket_id == ticket_id)
        .order_by(TicketStatusHistory.id.asc())
        .all()
    )


def has_surveyed(db: Session, ticket_id: UUID, user_id: UUID) -> bool:
    return db.query(
        db.query(SatisfactionSurvey)
        .filter(
            SatisfactionSurvey.ticket_id == ticket_id,
            SatisfactionSurvey.user_id == user_id,
        )
        .exists()
    ).scalar()


def is_feedback_eligible(db: Session, ticket: Ticket, user_id: UUID) -> bool:
    """
    Whether to prompt this viewer for a satisfaction survey.

    True when the ticket is resolved or closed, the viewer is its creator or
    assignee, and they have not answered yet.
    """
    if TicketStatus(ticket.status) not in FEEDBACK_STATUSES:
        return False
    if user_id not in (ticket.created_by, ticket.assigned_to):
        return False
    return not has_surveyed(db, ticket.id, user_id)
