"""Pydantic schemas for ticket chat messages and attachments."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from helpdesk.db.enums import MessageStatus


class AttachmentIn(BaseModel):
    """Metadata of a file already stored in object storage."""

    file_name: str = Field(min_length=1, max_length=255)
    file_path: str = Field(min_length=1, max_length=500)
    file_size: int = Field(ge=0)
    file_type: str = Field(min_length=1, max_length=120)


class AttachmentRead(BaseModel):
    id: UUID
    ticket_id: UUID
    message_id: int | None = None
    file_name: str
    file_path: str
    file_size: int
    file_type: str
    uploaded_by: UUID | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageRead(BaseModel):
    """Chat message as delivered to clients."""

    id: int
    ticket_id: UUID
    sender_id: UUID | None = None
    message: str
    is_system_message: bool
    voice_note_ref: str | None = None
    status: MessageStatus
    created_at: datetime
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    attachments: list[AttachmentRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MessageCreate(BaseModel):
    """Send a text message, optionally with attachments."""

    message: str = Field(default="", max_length=10000)
    attachments: list[AttachmentIn] = Field(default_factory=list, max_length=10)


class VoiceNoteCreate(BaseModel):
    """Send a voice note already uploaded to the voice-notes bucket."""

    voice_note_ref: str = Field(min_length=1, max_length=500)


class DeliveryAckRequest(BaseModel):
    """Client acknowledgement that messages reached the device."""

    message_ids: list[int] | None = None


class MessageStatusUpdateResponse(BaseModel):
    updated: int
