"""Pydantic schemas for tickets and their status history."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from helpdesk.db.enums import TicketPriority, TicketStatus


class TicketRead(BaseModel):
    """Ticket row as seen by clients and carried in ticket_updated events."""

    id: UUID
    number: int
    title: str
    status: TicketStatus
    priority: TicketPriority
    created_by: UUID | None = None
    assigned_to: UUID | None = None
    department_id: UUID | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    model_config = {"from_attributes": True}


class TicketStatusHistoryRead(BaseModel):
    """One transition in the audit trail."""

    id: int
    ticket_id: UUID
    old_status: TicketStatus | None = None
    new_status: TicketStatus
    changed_by: UUID | None = None
    changed_by_name: str | None = None
    notes: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TicketStatusChangeRequest(BaseModel):
    """Request a status transition.

    expected_status is the status the client last saw; when given, the change is
    rejected with 409 if someone else moved the ticket in the meantime.
    """

    status: TicketStatus
    notes: str | None = Field(default=None, max_length=2000)
    expected_status: TicketStatus | None = None


class TicketStatusChangeResponse(BaseModel):
    status: str  # applied | unchanged
    ticket: TicketRead
    history_id: int | None = None
    side_effect_errors: list[str] = Field(default_factory=list)


class TicketAssignRequest(BaseModel):
    assignee_id: UUID | None = None


class FeedbackEligibilityResponse(BaseModel):
    """Whether the satisfaction survey prompt should be shown to this viewer."""

    eligible: bool
    ticket_status: TicketStatus
    already_surveyed: bool
