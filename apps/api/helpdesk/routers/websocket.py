"""
WebSocket router for realtime ticket views and presence.

Client frames are JSON objects with an ``action``:

    ping                          -> {"type": "pong"}
    subscribe_notifications       notifications:{me}
    open_ticket {ticket_id}       ticket + viewers topics, viewer row, read receipts
    close_ticket {ticket_id}      tears the view down, deletes the viewer row
    viewer_heartbeat {ticket_id}  refreshes the viewer row
    presence_heartbeat {status?}  global presence (subscribes presence:global)
    activity                      input activity (away -> online)
    visibility {visible}          tab foregrounded: heartbeat now
    set_status {status}           manual online / busy / away
    ack {ticket_id, message_ids?} delivery receipt

Server frames are serialized events (discriminated on ``kind``) or
``{"type": "pong" | "error" | "snapshot", ...}``.
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from helpdesk.core.async_utils import run_sync
from helpdesk.core.deps import COOKIE_NAME, AuthError, build_session, get_db
from helpdesk.core.policies import can_view_ticket
from helpdesk.core.structured_logging import build_log_context
from helpdesk.core.websocket import ClientSession, manager
from helpdesk.db.enums import PresenceStatus
from helpdesk.schemas.events import (
    global_presence_topic,
    notifications_topic,
    ticket_topic,
    viewers_topic,
)
from helpdesk.services import message_service, presence_service, viewer_service
from helpdesk.services.ticket_service import get_ticket

logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


class FrameError(Exception):
    """A client frame that cannot be handled; reported back as an error frame."""


def _ticket_id(frame: dict) -> UUID:
    try:
        return UUID(str(frame["ticket_id"]))
    except (KeyError, ValueError):
        raise FrameError("ticket_id is required")


def _status(frame: dict) -> PresenceStatus:
    try:
        return PresenceStatus(frame.get("status", PresenceStatus.ONLINE.value))
    except ValueError:
        raise FrameError("Unknown presence status")


# =============================================================================
# Presence helpers
# =============================================================================


async def _global_heartbeat(client: ClientSession, status: PresenceStatus | None = None) -> None:
    tracker = presence_service.get_global_tracker()
    if client.subscribe(global_presence_topic()):
        client.global_online = True
    await run_sync(
        tracker.heartbeat,
        client.user_id,
        status or client.activity.status(),
        client.session.profile_snapshot,
    )


async def _send_global_snapshot(client: ClientSession) -> None:
    tracker = presence_service.get_global_tracker()
    users = await run_sync(tracker.roster, None, client.user_id)
    await client.send_json(
        {
            "type": "snapshot",
            "scope": tracker.scope,
            "users": [u.model_dump(mode="json") for u in users],
            "total_online": presence_service.online_count(users, self_online=True),
        }
    )


async def _close_ticket_view(client: ClientSession, db: Session, ticket_id: UUID) -> None:
    await client.unsubscribe(ticket_topic(ticket_id))
    await client.unsubscribe(viewers_topic(ticket_id))
    client.open_tickets.discard(ticket_id)
    # Another tab of the same user keeps the viewer row and room presence
    if manager.is_viewing(client.user_id, ticket_id):
        return
    await run_sync(viewer_service.remove_viewer, db, ticket_id, client.user_id)
    await run_sync(presence_service.leave_room, ticket_id, client.user_id)


# =============================================================================
# Actions
# =============================================================================


async def _ping(client: ClientSession, db: Session, frame: dict) -> None:
    await client.send_json({"type": "pong"})


async def _subscribe_notifications(client: ClientSession, db: Session, frame: dict) -> None:
    client.subscribe(notifications_topic(client.user_id))


async def _open_ticket(client: ClientSession, db: Session, frame: dict) -> None:
    ticket_id = _ticket_id(frame)
    ticket = await run_sync(get_ticket, db, ticket_id)
    if ticket is None or not can_view_ticket(client.session, ticket):
        raise FrameError("Ticket not found")

    # Subscribe before the snapshot so nothing committed in between is missed
    client.subscribe(ticket_topic(ticket_id))
    client.subscribe(viewers_topic(ticket_id))
    client.open_tickets.add(ticket_id)

    await run_sync(viewer_service.touch_viewer, db, ticket_id, client.user_id)
    await run_sync(
        presence_service.get_room_tracker(ticket_id).heartbeat,
        client.user_id,
        PresenceStatus.ONLINE,
        client.session.profile_snapshot,
    )
    await run_sync(message_service.mark_ticket_read, db, ticket_id, client.user_id)

    viewers = await run_sync(
        viewer_service.list_active_viewers, db, ticket_id, None, None, client.user_id
    )
    await client.send_json(
        {
            "type": "snapshot",
            "scope": ticket_topic(ticket_id),
            "ticket_id": str(ticket_id),
            "viewers": [viewer_service.to_viewer_read(v).model_dump(mode="json") for v in viewers],
        }
    )


async def _close_ticket(client: ClientSession, db: Session, frame: dict) -> None:
    await _close_ticket_view(client, db, _ticket_id(frame))


async def _viewer_heartbeat(client: ClientSession, db: Session, frame: dict) -> None:
    ticket_id = _ticket_id(frame)
    if ticket_id not in client.open_tickets:
        raise FrameError("Ticket is not open")
    await run_sync(viewer_service.touch_viewer, db, ticket_id, client.user_id)
    await run_sync(
        presence_service.get_room_tracker(ticket_id).heartbeat,
        client.user_id,
        PresenceStatus.ONLINE,
        client.session.profile_snapshot,
    )


async def _presence_heartbeat(client: ClientSession, db: Session, frame: dict) -> None:
    first = not client.global_online
    if "status" in frame:
        client.activity.set_manual_status(_status(frame))
    await _global_heartbeat(client)
    if first:
        await _send_global_snapshot(client)


async def _activity(client: ClientSession, db: Session, frame: dict) -> None:
    before = client.activity.status()
    after = client.activity.record_activity()
    if client.global_online and after != before:
        await _global_heartbeat(client)


async def _visibility(client: ClientSession, db: Session, frame: dict) -> None:
    if frame.get("visible", True) and client.activity.foreground():
        if client.global_online:
            await _global_heartbeat(client)


async def _set_status(client: ClientSession, db: Session, frame: dict) -> None:
    client.activity.set_manual_status(_status(frame))
    if client.global_online:
        await _global_heartbeat(client)


async def _ack(client: ClientSession, db: Session, frame: dict) -> None:
    ticket_id = _ticket_id(frame)
    if ticket_id not in client.open_tickets:
        ticket = await run_sync(get_ticket, db, ticket_id)
        if ticket is None or not can_view_ticket(client.session, ticket):
            raise FrameError("Ticket not found")
    message_ids = frame.get("message_ids")
    if message_ids is not None and not isinstance(message_ids, list):
        raise FrameError("message_ids must be a list")
    await run_sync(
        message_service.acknowledge_delivery, db, ticket_id, client.user_id, message_ids
    )


ACTIONS: dict[str, Callable[[ClientSession, Session, dict], Awaitable[None]]] = {
    "ping": _ping,
    "subscribe_notifications": _subscribe_notifications,
    "open_ticket": _open_ticket,
    "close_ticket": _close_ticket,
    "viewer_heartbeat": _viewer_heartbeat,
    "presence_heartbeat": _presence_heartbeat,
    "activity": _activity,
    "visibility": _visibility,
    "set_status": _set_status,
    "ack": _ack,
}


async def handle_frame(client: ClientSession, db: Session, raw: str) -> None:
    # Bare "ping" kept for simple keepalive clients
    if raw == "ping":
        await _ping(client, db, {})
        return
    try:
        frame = json.loads(raw)
    except ValueError:
        await client.send_error("Invalid JSON")
        return
    if not isinstance(frame, dict):
        await client.send_error("Frame must be an object")
        return

    handler = ACTIONS.get(frame.get("action"))
    if handler is None:
        await client.send_error(f"Unknown action: {frame.get('action')}")
        return
    try:
        await handler(client, db, frame)
    except FrameError as e:
        await client.send_error(str(e))


async def _teardown(client: ClientSession, db: Session) -> None:
    for ticket_id in list(client.open_tickets):
        await _close_ticket_view(client, db, ticket_id)
    await manager.disconnect(client)
    if client.global_online and not manager.is_globally_online(client.user_id):
        await run_sync(presence_service.get_global_tracker().leave, client.user_id)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """
    Realtime endpoint.

    Authenticates via:
    1. JWT token in query parameter (?token=...)
    2. Or session cookie (for browser clients)
    """
    token = token or websocket.cookies.get(COOKIE_NAME)
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return
    try:
        session = await run_sync(build_session, db, token)
    except AuthError as e:
        await websocket.close(code=4001 if e.status_code == 401 else 4003, reason=e.detail)
        return

    client = await manager.connect(websocket, session)
    logger.info("WebSocket connected", extra=build_log_context(user_id=client.user_id))
    try:
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            await handle_frame(client, db, data)
    finally:
        await _teardown(client, db)
        logger.info("WebSocket disconnected", extra=build_log_context(user_id=client.user_id))
