"""
WebSocket connection manager for realtime ticket views and presence.

Each connection is a ClientSession owning its topic subscriptions and the
tasks that pump events from them to the socket. Closing a view or the socket
tears down everything that view owns together.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, Iterable, Set
from uuid import UUID

from fastapi import WebSocket

from helpdesk.core.event_channel import EventChannel, Subscription, channel as default_channel
from helpdesk.schemas.auth import UserSession
from helpdesk.services.presence_service import ActivityState

logger = logging.getLogger(__name__)


class ClientSession:
    """One websocket connection and the subscriptions it owns."""

    def __init__(
        self,
        websocket: WebSocket,
        session: UserSession,
        channel: EventChannel | None = None,
    ):
        self.websocket = websocket
        self.session = session
        self.user_id: UUID = session.effective_user_id
        self.open_tickets: Set[UUID] = set()
        self.activity = ActivityState()
        self.global_online = False
        self._channel = channel or default_channel
        self._pumps: Dict[str, tuple[Subscription, asyncio.Task]] = {}
        self._send_lock = asyncio.Lock()

    @property
    def topics(self) -> list[str]:
        return list(self._pumps)

    async def send_json(self, message: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(message, default=str))

    async def send_error(self, detail: str) -> None:
        await self.send_json({"type": "error", "detail": detail})

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, topic: str, kinds: Iterable[str] | None = None) -> bool:
        """Start pumping a topic to this socket. Returns False if already subscribed."""
        if topic in self._pumps:
            return False
        subscription = self._channel.subscribe(topic, kinds)
        task = asyncio.create_task(self._pump(subscription))
        self._pumps[topic] = (subscription, task)
        return True

    async def _pump(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                async with self._send_lock:
                    await self.websocket.send_text(event.model_dump_json())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Client re-fetches a snapshot when it notices the gap
            logger.warning(
                "Subscription pump for %s stopped: %s",
                subscription.topic,
                exc,
                extra={"user_id": str(self.user_id), "topic": subscription.topic},
            )
        finally:
            subscription.close()

    async def unsubscribe(self, topic: str) -> bool:
        entry = self._pumps.pop(topic, None)
        if entry is None:
            return False
        subscription, task = entry
        subscription.close()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def close_all(self) -> None:
        for topic in list(self._pumps):
            await self.unsubscribe(topic)


class ConnectionManager:
    """Manages WebSocket client sessions per user."""

    def __init__(self):
        # user_id -> set of active client sessions
        self._connections: Dict[UUID, Set[ClientSession]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session: UserSession) -> ClientSession:
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        client = ClientSession(websocket, session)
        async with self._lock:
            self._connections.setdefault(client.user_id, set()).add(client)
        return client

    async def disconnect(self, client: ClientSession) -> None:
        """Cancel the connection's subscriptions and forget it."""
        await client.close_all()
        async with self._lock:
            clients = self._connections.get(client.user_id)
            if clients is not None:
                clients.discard(client)
                if not clients:
                    del self._connections[client.user_id]

    def is_globally_online(self, user_id: UUID) -> bool:
        """Whether any remaining connection of the user holds the global view."""
        return any(c.global_online for c in self._connections.get(user_id, set()))

    def is_viewing(self, user_id: UUID, ticket_id: UUID) -> bool:
        """Whether any connection of the user still has the ticket open."""
        return any(ticket_id in c.open_tickets for c in self._connections.get(user_id, set()))

    def get_connected_count(self, user_id: UUID) -> int:
        """Get the number of active connections for a user."""
        return len(self._connections.get(user_id, set()))

    def get_total_connections(self) -> int:
        """Get total number of active connections across all users."""
        return sum(len(conns) for conns in self._connections.values())


# Singleton instance
manager = ConnectionManager()
