"""HTTP API tests: tickets, chat, receipts, presence, viewers and notifications."""

import pytest
from httpx import AsyncClient

from helpdesk.services import message_service


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "env" in data
    assert "version" in data
    assert data["websocket_connections"] == 0


# =============================================================================
# Tickets
# =============================================================================


@pytest.mark.asyncio
async def test_ticket_visibility(client: AsyncClient, ticket, requester, outsider, headers_for):
    response = await client.get(f"/tickets/{ticket.id}", headers=headers_for(requester))
    assert response.status_code == 200
    assert response.json()["status"] == "open"

    response = await client.get(f"/tickets/{ticket.id}", headers=headers_for(outsider))
    assert response.status_code == 403

    response = await client.get(
        "/tickets/00000000-0000-0000-0000-000000000000", headers=headers_for(requester)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_status_change_and_history(client: AsyncClient, ticket, agent, headers_for):
    response = await client.post(
        f"/tickets/{ticket.id}/status",
        json={"status": "in_progress", "notes": "On it"},
        headers=headers_for(agent),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "applied"
    assert body["ticket"]["status"] == "in_progress"
    assert body["history_id"] is not None

    history = await client.get(f"/tickets/{ticket.id}/history", headers=headers_for(agent))
    assert history.status_code == 200
    rows = history.json()
    assert len(rows) == 1
    assert rows[0]["old_status"] == "open"
    assert rows[0]["changed_by_name"] == "Alex Agent"
    assert rows[0]["notes"] == "On it"


@pytest.mark.asyncio
async def test_status_change_errors(client: AsyncClient, db, ticket, agent, requester, headers_for):
    # Off-graph
    response = await client.post(
        f"/tickets/{ticket.id}/status", json={"status": "closed"}, headers=headers_for(agent)
    )
    assert response.status_code == 422

    # Requester cannot start work
    response = await client.post(
        f"/tickets/{ticket.id}/status", json={"status": "in_progress"}, headers=headers_for(requester)
    )
    assert response.status_code == 403

    # Stale expected_status
    response = await client.post(
        f"/tickets/{ticket.id}/status",
        json={"status": "in_progress", "expected_status": "resolved"},
        headers=headers_for(agent),
    )
    assert response.status_code == 409

    # Same status is a no-op
    response = await client.post(
        f"/tickets/{ticket.id}/status", json={"status": "open"}, headers=headers_for(agent)
    )
    assert response.status_code == 200
    assert response.json()["status"] == "unchanged"


@pytest.mark.asyncio
async def test_closed_ticket_cannot_change(client: AsyncClient, db, ticket, agent, headers_for):
    ticket.status = "closed"
    db.commit()

    response = await client.post(
        f"/tickets/{ticket.id}/status", json={"status": "open"}, headers=headers_for(agent)
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reassign(client: AsyncClient, ticket, agent, other_agent, requester, headers_for):
    response = await client.post(
        f"/tickets/{ticket.id}/assignee",
        json={"assignee_id": str(other_agent.id)},
        headers=headers_for(agent),
    )
    assert response.status_code == 200
    assert response.json()["assigned_to"] == str(other_agent.id)

    response = await client.post(
        f"/tickets/{ticket.id}/assignee",
        json={"assignee_id": str(agent.id)},
        headers=headers_for(requester),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_feedback_eligibility(client: AsyncClient, ticket, agent, requester, headers_for):
    for status in ("in_progress", "resolved"):
        await client.post(
            f"/tickets/{ticket.id}/status", json={"status": status}, headers=headers_for(agent)
        )

    response = await client.get(
        f"/tickets/{ticket.id}/feedback-eligibility", headers=headers_for(requester)
    )
    assert response.status_code == 200
    assert response.json() == {
        "eligible": True,
        "ticket_status": "resolved",
        "already_surveyed": False,
    }


# =============================================================================
# Messages
# =============================================================================


@pytest.mark.asyncio
async def test_send_and_list_messages(client: AsyncClient, ticket, requester, agent, headers_for):
    response = await client.post(
        f"/tickets/{ticket.id}/messages",
        json={"message": "Hello there"},
        headers=headers_for(requester),
    )
    assert response.status_code == 201
    first = response.json()
    assert first["status"] == "sent"
    assert first["sender_id"] == str(requester.id)

    await client.post(
        f"/tickets/{ticket.id}/messages",
        json={"message": "Hi, looking now"},
        headers=headers_for(agent),
    )

    response = await client.get(f"/tickets/{ticket.id}/messages", headers=headers_for(agent))
    assert [m["message"] for m in response.json()] == ["Hello there", "Hi, looking now"]

    response = await client.get(
        f"/tickets/{ticket.id}/messages?after_id={first['id']}", headers=headers_for(agent)
    )
    assert [m["message"] for m in response.json()] == ["Hi, looking now"]


@pytest.mark.asyncio
async def test_empty_message_is_422(client: AsyncClient, ticket, requester, headers_for):
    response = await client.post(
        f"/tickets/{ticket.id}/messages", json={"message": "  "}, headers=headers_for(requester)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_closed_ticket_rejects_messages(client: AsyncClient, db, ticket, requester, headers_for):
    ticket.status = "closed"
    db.commit()

    response = await client.post(
        f"/tickets/{ticket.id}/messages", json={"message": "hello?"}, headers=headers_for(requester)
    )
    assert response.status_code == 409

    response = await client.post(
        f"/tickets/{ticket.id}/voice-notes",
        json={"voice_note_ref": "voice-notes/a.webm"},
        headers=headers_for(requester),
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_voice_note_endpoint(client: AsyncClient, ticket, requester, headers_for):
    response = await client.post(
        f"/tickets/{ticket.id}/voice-notes",
        json={"voice_note_ref": "voice-notes/a.webm"},
        headers=headers_for(requester),
    )
    assert response.status_code == 201
    assert response.json()["message"] == "Voice note"
    assert response.json()["voice_note_ref"] == "voice-notes/a.webm"


@pytest.mark.asyncio
async def test_read_and_delivery_receipts(client: AsyncClient, db, ticket, requester, agent, headers_for):
    for text in ("one", "two", "three"):
        message_service.send_message(db, ticket, requester.id, text)

    response = await client.post(
        f"/tickets/{ticket.id}/messages/delivered", json={}, headers=headers_for(agent)
    )
    assert response.json() == {"updated": 3}

    response = await client.post(f"/tickets/{ticket.id}/messages/read", headers=headers_for(agent))
    assert response.json() == {"updated": 3}

    response = await client.post(f"/tickets/{ticket.id}/messages/read", headers=headers_for(agent))
    assert response.json() == {"updated": 0}

    # Delivery acks never downgrade read messages
    response = await client.post(
        f"/tickets/{ticket.id}/messages/delivered", json={}, headers=headers_for(agent)
    )
    assert response.json() == {"updated": 0}


# =============================================================================
# Presence and viewers
# =============================================================================


@pytest.mark.asyncio
async def test_global_roster_excludes_caller(client: AsyncClient, requester, agent, headers_for):
    response = await client.post(
        "/presence/global/heartbeat", json={"status": "busy"}, headers=headers_for(agent)
    )
    assert response.status_code == 200
    assert response.json()["users"] == []
    assert response.json()["total_online"] == 1

    response = await client.post(
        "/presence/global/heartbeat", json={}, headers=headers_for(requester)
    )
    body = response.json()
    assert [u["user_id"] for u in body["users"]] == [str(agent.id)]
    assert body["users"][0]["status"] == "busy"
    assert body["users"][0]["profile_snapshot"]["full_name"] == "Alex Agent"
    assert body["total_online"] == 2

    response = await client.get("/presence/global", headers=headers_for(agent))
    assert [u["user_id"] for u in response.json()["users"]] == [str(requester.id)]


@pytest.mark.asyncio
async def test_viewer_lifecycle(client: AsyncClient, ticket, requester, agent, headers_for):
    response = await client.put(f"/tickets/{ticket.id}/viewers/me", headers=headers_for(agent))
    assert response.status_code == 200
    assert response.json()["full_name"] == "Alex Agent"

    # Heartbeat again: still one row
    await client.put(f"/tickets/{ticket.id}/viewers/me", headers=headers_for(agent))

    response = await client.get(f"/tickets/{ticket.id}/viewers", headers=headers_for(requester))
    assert [v["user_id"] for v in response.json()["viewers"]] == [str(agent.id)]

    # The caller is not listed to themselves
    response = await client.get(f"/tickets/{ticket.id}/viewers", headers=headers_for(agent))
    assert response.json()["viewers"] == []

    response = await client.get(f"/presence/tickets/{ticket.id}", headers=headers_for(requester))
    assert [u["user_id"] for u in response.json()["users"]] == [str(agent.id)]

    response = await client.delete(f"/tickets/{ticket.id}/viewers/me", headers=headers_for(agent))
    assert response.status_code == 204

    response = await client.get(f"/tickets/{ticket.id}/viewers", headers=headers_for(requester))
    assert response.json()["viewers"] == []
    response = await client.get(f"/presence/tickets/{ticket.id}", headers=headers_for(requester))
    assert response.json()["users"] == []


@pytest.mark.asyncio
async def test_viewers_require_ticket_access(client: AsyncClient, ticket, outsider, headers_for):
    response = await client.put(f"/tickets/{ticket.id}/viewers/me", headers=headers_for(outsider))
    assert response.status_code == 403


# =============================================================================
# Notifications
# =============================================================================


@pytest.mark.asyncio
async def test_notifications_flow(client: AsyncClient, db, ticket, requester, agent, headers_for):
    message_service.send_message(db, ticket, agent.id, "First reply", sender_is_staff=True)
    message_service.send_message(db, ticket, agent.id, "Second reply", sender_is_staff=True)

    response = await client.get("/me/notifications", headers=headers_for(requester))
    assert response.status_code == 200
    body = response.json()
    assert body["unread_count"] == 2
    assert {n["message"] for n in body["items"]} == {"First reply", "Second reply"}
    note_id = body["items"][0]["id"]

    # Someone else's notification looks like it does not exist
    response = await client.patch(f"/me/notifications/{note_id}/read", headers=headers_for(agent))
    assert response.status_code == 404

    response = await client.patch(f"/me/notifications/{note_id}/read", headers=headers_for(requester))
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    response = await client.get("/me/notifications/count", headers=headers_for(requester))
    assert response.json() == {"count": 1}

    response = await client.post("/me/notifications/read-all", headers=headers_for(requester))
    assert response.json() == {"updated": 1}
