"""Tests for in-app notifications."""

from sqlalchemy.exc import SQLAlchemyError

from helpdesk.db.enums import NotificationType
from helpdesk.db.models import Notification
from helpdesk.services import notification_service


def test_create_and_list(db, requester):
    notification_service.create_notification(db, requester.id, "First", "one")
    notification_service.create_notification(
        db, requester.id, "Second", "two", type=NotificationType.WARNING
    )

    listed = notification_service.list_notifications(db, requester.id)
    assert {n.title for n in listed} == {"First", "Second"}
    assert notification_service.get_unread_count(db, requester.id) == 2
    warning = next(n for n in listed if n.title == "Second")
    assert warning.type == "warning"


def test_mark_read_scoped_to_owner(db, requester, agent):
    note = notification_service.create_notification(db, requester.id, "Yours", "hello")

    # Another user cannot flip someone else's notification
    assert notification_service.mark_read(db, note.id, agent.id) is None
    db.refresh(note)
    assert note.is_read is False

    updated = notification_service.mark_read(db, note.id, requester.id)
    assert updated.is_read is True
    assert notification_service.get_unread_count(db, requester.id) == 0


def test_mark_all_read_counts_only_callers_rows(db, requester, agent):
    for i in range(3):
        notification_service.create_notification(db, requester.id, f"n{i}", "x")
    notification_service.create_notification(db, agent.id, "agent", "x")

    assert notification_service.mark_all_read(db, requester.id) == 3
    assert notification_service.mark_all_read(db, requester.id) == 0
    assert notification_service.get_unread_count(db, agent.id) == 1

    unread = notification_service.list_notifications(db, requester.id, unread_only=True)
    assert unread == []


def test_notify_swallows_store_failures(db, requester, monkeypatch):
    def _boom():
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(db, "commit", _boom)

    assert notification_service.notify(db, requester.id, "t", "m") is None
    monkeypatch.undo()
    assert db.query(Notification).count() == 0


def test_message_recipient_rules(ticket, requester, agent, other_agent):
    # Creator writes: assignee is notified
    assert notification_service.message_recipient(ticket, requester.id, False) == agent.id
    # Staff on someone else's ticket: creator is notified
    assert notification_service.message_recipient(ticket, agent.id, True) == requester.id
    assert notification_service.message_recipient(ticket, other_agent.id, True) == requester.id


def test_message_recipient_none_when_self(ticket, requester, agent):
    ticket.assigned_to = requester.id
    assert notification_service.message_recipient(ticket, requester.id, False) is None

    ticket.assigned_to = None
    assert notification_service.message_recipient(ticket, requester.id, False) is None


def test_status_change_not_sent_to_actor(db, ticket, requester):
    from helpdesk.db.enums import TicketStatus

    assert notification_service.notify_ticket_status_changed(
        db, ticket, TicketStatus.CLOSED, requester.id
    ) is None
    assert db.query(Notification).count() == 0
