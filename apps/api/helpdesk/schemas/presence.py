"""Pydantic schemas for presence and ticket viewers."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from helpdesk.db.enums import PresenceStatus


class PresenceEntry(BaseModel):
    """
    One presence broadcast: {user_id, online_at, status, profile_snapshot}.

    online_at is the time of the last heartbeat, not of the first connect.
    """

    user_id: UUID
    online_at: datetime
    status: PresenceStatus = PresenceStatus.ONLINE
    profile_snapshot: dict | None = None


class PresenceHeartbeat(BaseModel):
    status: PresenceStatus = PresenceStatus.ONLINE


class RosterResponse(BaseModel):
    """Live roster as seen by the caller (caller excluded from users)."""

    scope: str
    users: list[PresenceEntry]
    total_online: int


class ViewerRead(BaseModel):
    user_id: UUID
    last_seen: datetime
    full_name: str | None = None
    avatar_url: str | None = None


class ViewerListResponse(BaseModel):
    ticket_id: UUID
    viewers: list[ViewerRead] = Field(default_factory=list)
