"""
Realtime events carried by the event channel.

Every event is a tagged variant discriminated on ``kind`` so consumers can
match exhaustively instead of guessing the payload shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

from helpdesk.db.enums import MessageStatus
from helpdesk.schemas.message import MessageRead
from helpdesk.schemas.notification import NotificationRead
from helpdesk.schemas.presence import PresenceEntry
from helpdesk.schemas.ticket import TicketRead
from helpdesk.utils.time import utc_now


# =============================================================================
# Topics
# =============================================================================

GLOBAL_PRESENCE_TOPIC = "presence:global"


def global_presence_topic() -> str:
    """Roster of every signed-in user."""
    return GLOBAL_PRESENCE_TOPIC


def ticket_topic(ticket_id: UUID | str) -> str:
    """Message inserts/updates and ticket row changes for one ticket."""
    return f"ticket:{ticket_id}"


def viewers_topic(ticket_id: UUID | str) -> str:
    return f"ticket-viewers:{ticket_id}"


def room_presence_topic(ticket_id: UUID | str) -> str:
    return f"presence:ticket:{ticket_id}"


def notifications_topic(user_id: UUID | str) -> str:
    return f"notifications:{user_id}"


# =============================================================================
# Variants
# =============================================================================

class _EventBase(BaseModel):
    topic: str
    occurred_at: datetime = Field(default_factory=utc_now)


class MessageInserted(_EventBase):
    kind: Literal["message_inserted"] = "message_inserted"
    ticket_id: UUID
    message: MessageRead


class MessageUpdated(_EventBase):
    """Bulk status change (delivered/read) of several messages."""
    kind: Literal["message_updated"] = "message_updated"
    ticket_id: UUID
    message_ids: list[int]
    status: MessageStatus
    actor_id: UUID | None = None


class TicketUpdated(_EventBase):
    kind: Literal["ticket_updated"] = "ticket_updated"
    ticket: TicketRead
    change: Literal["status", "assignee"]
    actor_id: UUID | None = None


class ViewerChanged(_EventBase):
    kind: Literal["viewer_changed"] = "viewer_changed"
    ticket_id: UUID
    user_id: UUID
    change: Literal["upsert", "delete"]
    last_seen: datetime | None = None


class PresenceSynced(_EventBase):
    """Full state of a presence scope (not a delta)."""
    kind: Literal["presence_synced"] = "presence_synced"
    scope: str
    entries: list[PresenceEntry]


class NotificationCreated(_EventBase):
    kind: Literal["notification_created"] = "notification_created"
    notification: NotificationRead


Event = Annotated[
    Union[
        MessageInserted,
        MessageUpdated,
        TicketUpdated,
        ViewerChanged,
        PresenceSynced,
        NotificationCreated,
    ],
    Field(discriminator="kind"),
]

EVENT_KINDS = frozenset(
    {
        "message_inserted",
        "message_updated",
        "ticket_updated",
        "viewer_changed",
        "presence_synced",
        "notification_created",
    }
)

_event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def parse_event(data: str | bytes | dict) -> Event:
    """Restore a tagged event from JSON text or a decoded dict.

    Raises:
        pydantic.ValidationError: unknown kind or malformed payload
    """
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)
