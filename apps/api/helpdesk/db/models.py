"""SQLAlchemy ORM models for tickets, chat, viewers and notifications."""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk.db.base import Base
from helpdesk.db.enums import (
    MessageStatus,
    NotificationType,
    Role,
    TicketPriority,
    TicketStatus,
)
from helpdesk.utils.time import utc_now

# Identity columns for append-only logs: BIGINT on Postgres, rowid alias on SQLite
SequenceId = BigInteger().with_variant(Integer, "sqlite")


# =============================================================================
# People
# =============================================================================

class Department(Base):
    """Support department a ticket can be routed to."""
    __tablename__ = "departments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class User(Base):
    """
    A person using the helpdesk (requester or staff).

    Profile fields are what presence broadcasts snapshot.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    role: Mapped[str] = mapped_column(
        String(30), nullable=False, default=Role.SUPPORT_USER.value
    )
    department_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Bumped to revoke every outstanding session token
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )

    department: Mapped["Department | None"] = relationship()

    @property
    def profile_snapshot(self) -> dict:
        return {"full_name": self.full_name, "avatar_url": self.avatar_url}


# =============================================================================
# Tickets
# =============================================================================

class Ticket(Base):
    """
    A support ticket.

    Status is only mutated through ticket_state_service; resolved_at and
    closed_at are stamped the first time the status is reached and never cleared.
    """
    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_status", "status", "updated_at"),
        Index("idx_tickets_assignee", "assigned_to", "status"),
        Index("idx_tickets_creator", "created_by", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TicketStatus.OPEN.value
    )
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TicketPriority.MEDIUM.value
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    department_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    creator: Mapped["User | None"] = relationship(foreign_keys=[created_by])
    assignee: Mapped["User | None"] = relationship(foreign_keys=[assigned_to])
    department: Mapped["Department | None"] = relationship()
    status_history: Mapped[list["TicketStatusHistory"]] = relationship(
        back_populates="ticket",
        order_by="TicketStatusHistory.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    messages: Mapped[list["TicketMessage"]] = relationship(
        back_populates="ticket",
        order_by=lambda: [TicketMessage.created_at, TicketMessage.id],
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TicketStatusHistory(Base):
    """
    Append-only audit trail of ticket status transitions.

    One row per applied transition; ids increase in commit order so
    consecutive rows chain old_status -> new_status.
    """
    __tablename__ = "ticket_status_history"
    __table_args__ = (
        Index("idx_ticket_history_ticket", "ticket_id", "id"),
    )

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )

    ticket: Mapped["Ticket"] = relationship(back_populates="status_history")
    changer: Mapped["User | None"] = relationship()


class TicketMessage(Base):
    """
    One chat message in a ticket conversation.

    sender_id is NULL for system-authored messages. status only moves forward
    (sent -> delivered -> read).
    """
    __tablename__ = "ticket_messages"
    __table_args__ = (
        Index("idx_ticket_messages_ticket", "ticket_id", "created_at"),
        Index("idx_ticket_messages_unread", "ticket_id", "status"),
    )

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_system_message: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Object storage key of a recorded voice note; message holds a placeholder text
    voice_note_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageStatus.SENT.value
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(nullable=True)

    ticket: Mapped["Ticket"] = relationship(back_populates="messages")
    sender: Mapped["User | None"] = relationship()
    attachments: Mapped[list["TicketAttachment"]] = relationship(
        back_populates="message", order_by="TicketAttachment.created_at"
    )


class TicketAttachment(Base):
    """File metadata linked to the message it was sent with."""
    __tablename__ = "ticket_attachments"
    __table_args__ = (
        Index("idx_ticket_attachments_ticket", "ticket_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[int | None] = mapped_column(
        SequenceId, ForeignKey("ticket_messages.id", ondelete="SET NULL"), nullable=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_type: Mapped[str] = mapped_column(String(120), nullable=False)
    uploaded_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )

    message: Mapped["TicketMessage | None"] = relationship(back_populates="attachments")


class TicketViewer(Base):
    """
    Who is looking at a ticket right now (persisted soft-state).

    Upserted on (ticket_id, user_id); rows older than the visibility window are
    ignored by readers even if the explicit delete on leave was missed.
    """
    __tablename__ = "ticket_viewers"
    __table_args__ = (
        UniqueConstraint("ticket_id", "user_id"),
        Index("idx_ticket_viewers_seen", "ticket_id", "last_seen"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    last_seen: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    user: Mapped["User"] = relationship()


class SatisfactionSurvey(Base):
    """Post-resolution survey answer; one per (ticket, user)."""
    __tablename__ = "satisfaction_surveys"
    __table_args__ = (
        UniqueConstraint("ticket_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


# =============================================================================
# Notifications
# =============================================================================

class Notification(Base):
    """
    In-app notification addressed to a single user.

    Only the recipient mutates it (is_read).
    """
    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notif_user_unread", "user_id", "is_read", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationType.INFO.value
    )
    ticket_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=True
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
