"""Tests for ticket access policies."""

import uuid

import pytest

from helpdesk.core.policies import (
    TransitionDenied,
    can_chat,
    can_reassign,
    can_view_ticket,
    check_transition,
    ensure_transition_allowed,
)
from helpdesk.db.enums import Role, TicketStatus
from helpdesk.schemas.auth import UserSession


def session_for(user, role: Role | None = None) -> UserSession:
    role = role or Role(user.role)
    return UserSession(
        user_id=user.id,
        role=role,
        email=user.email,
        display_name=user.full_name,
        effective_user_id=user.id,
        effective_roles=frozenset({role}),
    )


def _set_status(db, ticket, status):
    ticket.status = status
    db.commit()


def test_visibility(ticket, requester, agent, other_agent, outsider):
    assert can_view_ticket(session_for(requester), ticket)
    assert can_view_ticket(session_for(agent), ticket)
    # Staff see every ticket
    assert can_view_ticket(session_for(other_agent), ticket)
    assert not can_view_ticket(session_for(outsider), ticket)


def test_closed_ticket_is_read_only(db, ticket, requester, agent):
    assert can_chat(session_for(requester), ticket)
    assert can_reassign(session_for(agent), ticket)
    assert not can_reassign(session_for(requester), ticket)

    _set_status(db, ticket, TicketStatus.CLOSED.value)

    assert not can_chat(session_for(requester), ticket)
    assert not can_chat(session_for(agent), ticket)
    assert not can_reassign(session_for(agent), ticket)


@pytest.mark.parametrize(
    "current,new,code",
    [
        ("closed", "open", 409),
        ("closed", "in_progress", 409),
        ("open", "resolved", 422),
        ("open", "closed", 422),
    ],
)
def test_denied_transitions_map_to_status_codes(db, ticket, agent, current, new, code):
    _set_status(db, ticket, current)

    with pytest.raises(TransitionDenied) as exc_info:
        ensure_transition_allowed(session_for(agent), ticket, TicketStatus(new))

    assert exc_info.value.status_code == code


def test_staff_may_walk_the_graph(db, ticket, agent):
    session = session_for(agent)
    for current, new in [("open", "in_progress"), ("in_progress", "resolved"), ("resolved", "closed")]:
        _set_status(db, ticket, current)
        ensure_transition_allowed(session, ticket, TicketStatus(new))


def test_requester_limited_to_confirming_or_reopening(db, ticket, requester):
    session = session_for(requester)

    with pytest.raises(TransitionDenied) as exc_info:
        ensure_transition_allowed(session, ticket, TicketStatus.IN_PROGRESS)
    assert exc_info.value.status_code == 403

    _set_status(db, ticket, "resolved")
    ensure_transition_allowed(session, ticket, TicketStatus.CLOSED)
    ensure_transition_allowed(session, ticket, TicketStatus.IN_PROGRESS)


def test_same_status_is_always_allowed(ticket, outsider):
    assert check_transition(session_for(outsider), ticket, TicketStatus.OPEN) is None


def test_check_transition_returns_reason(ticket, outsider):
    reason = check_transition(session_for(outsider), ticket, TicketStatus.IN_PROGRESS)
    assert reason == "Not allowed to change the status of this ticket"


def test_effective_identity_used_for_participation(ticket, superadmin, requester):
    impersonating = UserSession(
        user_id=superadmin.id,
        role=Role.SUPERADMIN,
        email=superadmin.email,
        display_name=requester.full_name,
        effective_user_id=requester.id,
        effective_roles=frozenset({Role.SUPPORT_USER}),
        impersonating=True,
    )
    assert not impersonating.is_staff
    assert can_view_ticket(impersonating, ticket)

    stranger = impersonating.model_copy(update={"effective_user_id": uuid.uuid4()})
    assert not can_view_ticket(stranger, ticket)
