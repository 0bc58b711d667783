"""
Presence Router - global roster, ticket room presence and ticket viewers.

HTTP fallbacks for what websocket clients do with heartbeat frames. The
caller never appears in a roster they fetch but is counted in total_online.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from helpdesk.core.deps import get_current_session, get_db, load_visible_ticket
from helpdesk.schemas.auth import UserSession
from helpdesk.schemas.presence import (
    PresenceHeartbeat,
    RosterResponse,
    ViewerListResponse,
    ViewerRead,
)
from helpdesk.services import presence_service, viewer_service
from helpdesk.services.presence_service import PresenceTracker

router = APIRouter()


def _roster_response(tracker: PresenceTracker, session: UserSession) -> RosterResponse:
    users = tracker.roster(exclude_user_id=session.effective_user_id)
    return RosterResponse(
        scope=tracker.scope,
        users=users,
        total_online=presence_service.online_count(users, self_online=True),
    )


# =============================================================================
# Global presence
# =============================================================================


@router.get("/presence/global", response_model=RosterResponse)
def get_global_roster(session: UserSession = Depends(get_current_session)):
    """Everyone online (online, busy, away order), excluding the caller."""
    return _roster_response(presence_service.get_global_tracker(), session)


@router.post("/presence/global/heartbeat", response_model=RosterResponse)
def global_heartbeat(
    data: PresenceHeartbeat,
    session: UserSession = Depends(get_current_session),
):
    """Refresh the caller's global presence record and return the roster."""
    tracker = presence_service.get_global_tracker()
    tracker.heartbeat(
        session.effective_user_id,
        status=data.status,
        profile=session.profile_snapshot,
    )
    return _roster_response(tracker, session)


@router.get("/presence/tickets/{ticket_id}", response_model=RosterResponse)
def get_room_roster(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Users present in a ticket room, excluding the caller."""
    ticket = load_visible_ticket(db, ticket_id, session)
    return _roster_response(presence_service.get_room_tracker(ticket.id), session)


# =============================================================================
# Ticket viewers
# =============================================================================


@router.get("/tickets/{ticket_id}/viewers", response_model=ViewerListResponse)
def list_viewers(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Other users who have the ticket open (seen within the visibility window)."""
    ticket = load_visible_ticket(db, ticket_id, session)
    viewers = viewer_service.list_active_viewers(
        db, ticket.id, exclude_user_id=session.effective_user_id
    )
    return ViewerListResponse(
        ticket_id=ticket.id,
        viewers=[viewer_service.to_viewer_read(v) for v in viewers],
    )


@router.put("/tickets/{ticket_id}/viewers/me", response_model=ViewerRead)
def touch_viewer(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Open or refresh the caller's view of the ticket."""
    ticket = load_visible_ticket(db, ticket_id, session)
    viewer = viewer_service.touch_viewer(db, ticket.id, session.effective_user_id)
    if viewer is None:
        raise HTTPException(status_code=503, detail="Could not record viewer")
    presence_service.get_room_tracker(ticket.id).heartbeat(
        session.effective_user_id, profile=session.profile_snapshot
    )
    return viewer_service.to_viewer_read(viewer)


@router.delete("/tickets/{ticket_id}/viewers/me", status_code=204)
def leave_ticket(
    ticket_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Close the caller's view (best-effort)."""
    ticket = load_visible_ticket(db, ticket_id, session)
    viewer_service.remove_viewer(db, ticket.id, session.effective_user_id)
    presence_service.leave_room(ticket.id, session.effective_user_id)
    return Response(status_code=204)
