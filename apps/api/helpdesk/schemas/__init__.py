"""Pydantic schemas for API request/response models and realtime events."""

from helpdesk.schemas.auth import TokenPayload, UserSession
from helpdesk.schemas.message import (
    AttachmentIn,
    AttachmentRead,
    DeliveryAckRequest,
    MessageCreate,
    MessageRead,
    VoiceNoteCreate,
)
from helpdesk.schemas.notification import NotificationRead
from helpdesk.schemas.presence import PresenceEntry, RosterResponse, ViewerRead
from helpdesk.schemas.ticket import (
    TicketRead,
    TicketStatusChangeRequest,
    TicketStatusHistoryRead,
)
