"""
Ticket viewers - who has a ticket open right now.

Rows in ticket_viewers are soft state: upserted on open and on every viewer
heartbeat, deleted on close. A client that vanishes without closing leaves a
row behind, so readers only trust rows seen within the visibility window and
the sweeper deletes rows far past it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from helpdesk.core.config import settings
from helpdesk.core.event_channel import channel
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.models import TicketViewer
from helpdesk.schemas.events import ViewerChanged, viewers_topic
from helpdesk.schemas.presence import ViewerRead
from helpdesk.utils.time import utc_now

logger = logging.getLogger(__name__)


def to_viewer_read(viewer: TicketViewer) -> ViewerRead:
    user = viewer.user
    return ViewerRead(
        user_id=viewer.user_id,
        last_seen=viewer.last_seen,
        full_name=user.full_name if user else None,
        avatar_url=user.avatar_url if user else None,
    )


def _viewer_query(db: Session, ticket_id: UUID, user_id: UUID):
    return db.query(TicketViewer).filter(
        TicketViewer.ticket_id == ticket_id,
        TicketViewer.user_id == user_id,
    )


def _publish(ticket_id: UUID, user_id: UUID, change: str, last_seen: datetime | None) -> None:
    channel.publish(
        ViewerChanged(
            topic=viewers_topic(ticket_id),
            ticket_id=ticket_id,
            user_id=user_id,
            change=change,
            last_seen=last_seen,
        )
    )


def touch_viewer(
    db: Session, ticket_id: UUID, user_id: UUID, now: datetime | None = None
) -> TicketViewer | None:
    """
    Upsert the (ticket, user) viewer row with last_seen = now.

    Called on open and on every viewer heartbeat. Failures are logged and
    return None; a missed heartbeat only shortens how long the user stays
    listed.
    """
    now = now or utc_now()
    log_context = build_log_context(user_id=user_id, ticket_id=ticket_id)

    try:
        viewer = _viewer_query(db, ticket_id, user_id).first()
        if viewer is None:
            viewer = TicketViewer(ticket_id=ticket_id, user_id=user_id, last_seen=now)
            db.add(viewer)
        else:
            viewer.last_seen = now
        try:
            db.commit()
        except IntegrityError:
            # Another connection of the same user inserted the row first
            db.rollback()
            _viewer_query(db, ticket_id, user_id).update(
                {TicketViewer.last_seen: now}, synchronize_session=False
            )
            db.commit()
            viewer = _viewer_query(db, ticket_id, user_id).first()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Viewer heartbeat failed: %s", exc, extra=log_context)
        return None

    if viewer is None:
        return None
    _publish(ticket_id, user_id, "upsert", now)
    return viewer


def remove_viewer(db: Session, ticket_id: UUID, user_id: UUID) -> bool:
    """Best-effort delete on leave; a failure is left to the visibility window."""
    try:
        deleted = _viewer_query(db, ticket_id, user_id).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "Viewer removal failed: %s",
            exc,
            extra=build_log_context(user_id=user_id, ticket_id=ticket_id),
        )
        return False

    if deleted:
        _publish(ticket_id, user_id, "delete", None)
    return bool(deleted)


def list_active_viewers(
    db: Session,
    ticket_id: UUID,
    window_seconds: float | None = None,
    now: datetime | None = None,
    exclude_user_id: UUID | None = None,
) -> list[TicketViewer]:
    """Viewers seen within the visibility window, most recent first."""
    window = window_seconds if window_seconds is not None else settings.viewer_window_seconds
    cutoff = (now or utc_now()) - timedelta(seconds=window)

    query = (
        db.query(TicketViewer)
        .options(selectinload(TicketViewer.user))
        .filter(
            TicketViewer.ticket_id == ticket_id,
            TicketViewer.last_seen >= cutoff,
        )
    )
    if exclude_user_id is not None:
        query = query.filter(TicketViewer.user_id != exclude_user_id)
    return query.order_by(TicketViewer.last_seen.desc()).all()


def purge_stale_viewers(
    db: Session, older_than_seconds: float | None = None, now: datetime | None = None
) -> int:
    """Delete viewer rows left behind by clients that never closed. Returns rows deleted."""
    age = older_than_seconds if older_than_seconds is not None else settings.VIEWER_PURGE_SECONDS
    cutoff = (now or utc_now()) - timedelta(seconds=age)
    deleted = db.query(TicketViewer).filter(TicketViewer.last_seen < cutoff).delete(
        synchronize_session=False
    )
    db.commit()
    if deleted:
        logger.info("Purged %d stale ticket viewer row(s)", deleted)
    return deleted
