"""
Topic-based publish/subscribe channel for realtime events.

Local fan-out happens in-process: every subscription owns a bounded asyncio
queue bound to the loop it was created on, and ``publish`` may be called from
the loop or from sync request threads. When Redis is configured, published
events are also sent to a shared Redis channel tagged with this instance's
source id; the listener started in the app lifespan re-delivers events coming
from other instances and skips its own. Publishes made on the loop go through
one outbox per loop drained by a single forwarder task, so other instances
see them in publish order; sync threads publish directly with the sync client.

Delivery is at-least-once to whoever is subscribed when the event is published.
There is no replay: a client that reconnects must re-fetch a snapshot.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from collections.abc import Iterable

from pydantic import ValidationError

from helpdesk.core.config import settings
from helpdesk.core.redis_client import get_async_redis_client, get_sync_redis_client
from helpdesk.schemas.events import Event, parse_event

logger = logging.getLogger(__name__)

_CLOSED = object()


class SubscriptionClosed(Exception):
    """Raised by Subscription.get() once the subscription has been closed."""


def should_deliver_event(envelope: dict, source_id: str) -> bool:
    """Skip backplane messages that this instance published itself."""
    return envelope.get("source_id") != source_id


class Subscription:
    """A live subscription to one topic, consumed as an async iterator."""

    def __init__(
        self,
        channel: "EventChannel",
        topic: str,
        kinds: frozenset[str] | None,
        maxsize: int,
        loop: asyncio.AbstractEventLoop,
    ):
        self.topic = topic
        self.kinds = kinds
        self.dropped = 0
        self._channel = channel
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def _offer(self, item) -> None:
        """Enqueue on the owning loop; drop the oldest event when full."""
        if self._closed and item is not _CLOSED:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
                logger.warning(
                    "Subscriber queue full on %s; dropped oldest event", self.topic
                )
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(item)

    def offer(self, item) -> None:
        """Hand an item to this subscription from any thread."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._offer(item)
            return
        try:
            self._loop.call_soon_threadsafe(self._offer, item)
        except RuntimeError:
            # Owning loop already closed; nothing left to deliver to
            self._closed = True

    async def get(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            raise SubscriptionClosed(self.topic)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        self.offer(_CLOSED)


class EventChannel:
    """In-process topic registry with an optional Redis backplane."""

    def __init__(self, *, queue_size: int | None = None, source_id: str | None = None):
        self.source_id = source_id or uuid.uuid4().hex
        self._queue_size = queue_size or settings.EVENT_QUEUE_SIZE
        self._subscriptions: dict[str, set[Subscription]] = {}
        # Sync request threads publish while the loop subscribes
        self._lock = threading.Lock()
        self._listener_task: asyncio.Task | None = None
        # loop -> (outbox, forwarder task); one forwarder per loop keeps publish order
        self._forwarders: dict[asyncio.AbstractEventLoop, tuple[asyncio.Queue, asyncio.Task]] = {}
        self.remote_dropped = 0

    # -------------------------------------------------------------------------
    # Subscribe
    # -------------------------------------------------------------------------

    def subscribe(self, topic: str, kinds: Iterable[str] | None = None) -> Subscription:
        """Subscribe to a topic. Must be called from the event loop."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(
            self,
            topic,
            frozenset(kinds) if kinds is not None else None,
            self._queue_size,
            loop,
        )
        with self._lock:
            self._subscriptions.setdefault(topic, set()).add(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.topic)
            if subs is None:
                return
            subs.discard(subscription)
            if not subs:
                del self._subscriptions[subscription.topic]

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic, ()))

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    def publish(self, event: Event) -> None:
        """Deliver to local subscribers and forward to other instances.

        Never raises: realtime delivery is best-effort and must not fail the
        write that produced the event.
        """
        try:
            self._deliver_local(event)
        except Exception:
            logger.exception("Local delivery failed for %s", event.topic)
        self._publish_remote(event)

    def _deliver_local(self, event: Event) -> int:
        with self._lock:
            subscribers = list(self._subscriptions.get(event.topic, ()))
        delivered = 0
        for subscription in subscribers:
            if subscription.matches(event):
                subscription.offer(event)
                delivered += 1
        return delivered

    def _envelope(self, event: Event) -> str:
        return json.dumps(
            {"source_id": self.source_id, "event": event.model_dump(mode="json")}
        )

    def _publish_remote(self, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            if get_async_redis_client() is None:
                return
            self._enqueue_remote(loop, self._envelope(event))
            return

        client = get_sync_redis_client()
        if client is None:
            return
        try:
            client.publish(settings.EVENT_REDIS_CHANNEL, self._envelope(event))
        except Exception as exc:
            logger.warning("Event backplane publish failed: %s", exc)

    def _enqueue_remote(self, loop: asyncio.AbstractEventLoop, payload: str) -> None:
        outbox, _ = self._forwarder(loop)
        if outbox.full():
            outbox.get_nowait()
            outbox.task_done()
            self.remote_dropped += 1
            logger.warning("Event backplane outbox full; dropped oldest event")
        outbox.put_nowait(payload)

    def _forwarder(self, loop: asyncio.AbstractEventLoop) -> tuple[asyncio.Queue, asyncio.Task]:
        forwarder = self._forwarders.get(loop)
        if forwarder is None:
            outbox: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
            task = loop.create_task(self._forward(outbox))
            task.add_done_callback(lambda done: self._forget_forwarder(loop, done))
            forwarder = self._forwarders[loop] = (outbox, task)
        return forwarder

    def _forget_forwarder(self, loop: asyncio.AbstractEventLoop, task: asyncio.Task) -> None:
        current = self._forwarders.get(loop)
        if current is not None and current[1] is task:
            del self._forwarders[loop]

    async def _forward(self, outbox: asyncio.Queue) -> None:
        """Send queued envelopes to Redis one at a time, in publish order."""
        while True:
            payload = await outbox.get()
            try:
                client = get_async_redis_client()
                if client is not None:
                    await client.publish(settings.EVENT_REDIS_CHANNEL, payload)
            except Exception as exc:
                logger.warning("Event backplane publish failed: %s", exc)
            finally:
                outbox.task_done()

    async def flush_remote(self, timeout: float = 2.0) -> None:
        """Wait for this loop's pending backplane publishes, then stop its forwarder."""
        forwarder = self._forwarders.pop(asyncio.get_running_loop(), None)
        if forwarder is None:
            return
        outbox, task = forwarder
        try:
            await asyncio.wait_for(outbox.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Event backplane flush timed out with %d pending", outbox.qsize())
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # -------------------------------------------------------------------------
    # Backplane listener
    # -------------------------------------------------------------------------

    def handle_remote_message(self, raw: str | bytes) -> bool:
        """Deliver one backplane message locally. Returns True if delivered."""
        try:
            envelope = json.loads(raw)
            if not should_deliver_event(envelope, self.source_id):
                return False
            event = parse_event(envelope["event"])
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            logger.warning("Dropping malformed backplane message: %s", exc)
            return False
        self._deliver_local(event)
        return True

    async def start_listener(self) -> None:
        """Start consuming the Redis backplane (no-op without Redis)."""
        client = get_async_redis_client()
        if client is None:
            return
        self._forwarder(asyncio.get_running_loop())
        if self._listener_task is not None and not self._listener_task.done():
            return
        self._listener_task = asyncio.create_task(self._listen(client))

    async def stop_listener(self) -> None:
        await self.flush_remote()
        task = self._listener_task
        self._listener_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _listen(self, client) -> None:
        pubsub = client.pubsub()
        await pubsub.subscribe(settings.EVENT_REDIS_CHANNEL)
        logger.info("Event backplane listening on %s", settings.EVENT_REDIS_CHANNEL)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.handle_remote_message(message["data"])
        except asyncio.CancelledError:
            raise
        except Exception:
            # Degrade to local-only delivery; clients keep their last known state
            logger.exception("Event backplane listener stopped")
        finally:
            try:
                await pubsub.unsubscribe(settings.EVENT_REDIS_CHANNEL)
                await pubsub.aclose()
            except Exception:
                logger.debug("Error closing backplane pubsub", exc_info=True)


# Singleton instance
channel = EventChannel()
