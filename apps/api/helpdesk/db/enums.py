"""Enums shared by models, schemas and services."""

from enum import Enum


class Role(str, Enum):
    """
    User roles.

    - SUPPORT_USER: Requester; opens tickets and chats with staff
    - ADMIN: Support agent; works assigned tickets
    - SUPERVISOR: Oversees agents and departments
    - SUPERADMIN: Platform owner; may act as another user
    """
    SUPPORT_USER = "support_user"
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    SUPERADMIN = "superadmin"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


STAFF_ROLES = frozenset({Role.ADMIN, Role.SUPERVISOR, Role.SUPERADMIN})


class TicketStatus(str, Enum):
    """
    Ticket lifecycle status.

    open → in_progress → resolved → closed
    Back-edges: in_progress → open, resolved → in_progress. closed is terminal.
    """
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def label(self) -> str:
        return TICKET_STATUS_LABELS[self]


TICKET_STATUS_LABELS = {
    TicketStatus.OPEN: "Open",
    TicketStatus.IN_PROGRESS: "In progress",
    TicketStatus.RESOLVED: "Resolved",
    TicketStatus.CLOSED: "Closed",
}

# Statuses that make the ticket eligible for a satisfaction survey
FEEDBACK_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


class TicketPriority(str, Enum):
    """Ticket priority level."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, Enum):
    """Per-message delivery lifecycle. Only ever moves forward."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _MESSAGE_STATUS_RANK[self]


_MESSAGE_STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


class PresenceStatus(str, Enum):
    """Activity state advertised in presence heartbeats."""
    ONLINE = "online"
    BUSY = "busy"
    AWAY = "away"


# Roster sort order: online first, away last
PRESENCE_SORT_ORDER = {
    PresenceStatus.ONLINE: 0,
    PresenceStatus.BUSY: 1,
    PresenceStatus.AWAY: 2,
}


class NotificationType(str, Enum):
    """Severity-style notification type shown as the notification's color."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
