"""
Presence Service - who is online, globally and inside a ticket room.

Presence is soft state. Each client heartbeats into a TTL-indexed store; a
record that stops being refreshed ages out after the scope's offline
threshold (heartbeat interval x missed beats), so a crashed client
disappears without an explicit leave. Every change publishes the full state
of the scope as a presence_synced event.

Stores:
- MemoryPresenceStore: single-instance deployments and tests
- RedisPresenceStore: shared across API instances (hash + expiry sorted set)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol
from uuid import UUID

from pydantic import ValidationError

from helpdesk.core.config import settings
from helpdesk.core.event_channel import EventChannel, channel as default_channel
from helpdesk.core.redis_client import get_sync_redis_client
from helpdesk.db.enums import PRESENCE_SORT_ORDER, PresenceStatus
from helpdesk.schemas.events import PresenceSynced, global_presence_topic, room_presence_topic
from helpdesk.schemas.presence import PresenceEntry
from helpdesk.utils.time import age_seconds, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Stores
# =============================================================================


class PresenceStore(Protocol):
    def upsert(self, scope: str, entry: PresenceEntry, ttl: float) -> None: ...

    def remove(self, scope: str, user_id: UUID) -> bool: ...

    def entries(self, scope: str, now: datetime) -> list[PresenceEntry]: ...

    def purge(self, scope: str, now: datetime) -> int: ...


class MemoryPresenceStore:
    """In-process presence records keyed by scope and user."""

    def __init__(self):
        self._records: dict[str, dict[UUID, tuple[PresenceEntry, float]]] = {}
        self._lock = threading.Lock()

    def upsert(self, scope: str, entry: PresenceEntry, ttl: float) -> None:
        expires_at = entry.online_at.timestamp() + ttl
        with self._lock:
            self._records.setdefault(scope, {})[entry.user_id] = (entry, expires_at)

    def remove(self, scope: str, user_id: UUID) -> bool:
        with self._lock:
            records = self._records.get(scope)
            if not records or user_id not in records:
                return False
            del records[user_id]
            if not records:
                del self._records[scope]
            return True

    def entries(self, scope: str, now: datetime) -> list[PresenceEntry]:
        cutoff = now.timestamp()
        with self._lock:
            records = list(self._records.get(scope, {}).values())
        return [entry for entry, expires_at in records if expires_at >= cutoff]

    def purge(self, scope: str, now: datetime) -> int:
        cutoff = now.timestamp()
        with self._lock:
            records = self._records.get(scope)
            if not records:
                return 0
            expired = [uid for uid, (_, expires_at) in records.items() if expires_at < cutoff]
            for uid in expired:
                del records[uid]
            if not records:
                del self._records[scope]
            return len(expired)

    def scopes(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class RedisPresenceStore:
    """
    Presence records shared through Redis.

    Per scope: a hash of user_id -> JSON entry and a sorted set of
    user_id scored by expiry time (epoch seconds).
    """

    KEY_PREFIX = "helpdesk:presence"

    def __init__(self, client):
        self._client = client

    def _keys(self, scope: str) -> tuple[str, str]:
        base = f"{self.KEY_PREFIX}:{scope}"
        return f"{base}:records", f"{base}:expiry"

    def upsert(self, scope: str, entry: PresenceEntry, ttl: float) -> None:
        records_key, expiry_key = self._keys(scope)
        member = str(entry.user_id)
        pipe = self._client.pipeline()
        pipe.hset(records_key, member, entry.model_dump_json())
        pipe.zadd(expiry_key, {member: entry.online_at.timestamp() + ttl})
        pipe.execute()

    def remove(self, scope: str, user_id: UUID) -> bool:
        records_key, expiry_key = self._keys(scope)
        member = str(user_id)
        pipe = self._client.pipeline()
        pipe.hdel(records_key, member)
        pipe.zrem(expiry_key, member)
        removed, _ = pipe.execute()
        return bool(removed)

    def entries(self, scope: str, now: datetime) -> list[PresenceEntry]:
        records_key, expiry_key = self._keys(scope)
        members = self._client.zrangebyscore(expiry_key, now.timestamp(), "+inf")
        if not members:
            return []
        entries: list[PresenceEntry] = []
        for raw in self._client.hmget(records_key, members):
            if raw is None:
                continue
            try:
                entries.append(PresenceEntry.model_validate_json(raw))
            except ValidationError:
                logger.warning("Dropping malformed presence record in %s", scope)
        return entries

    def purge(self, scope: str, now: datetime) -> int:
        records_key, expiry_key = self._keys(scope)
        # Members that expired before now (exclusive upper bound)
        expired = self._client.zrangebyscore(expiry_key, "-inf", f"({now.timestamp()}")
        if not expired:
            return 0
        pipe = self._client.pipeline()
        pipe.hdel(records_key, *expired)
        pipe.zrem(expiry_key, *expired)
        pipe.execute()
        return len(expired)


_memory_store = MemoryPresenceStore()


def get_presence_store() -> PresenceStore:
    """Redis-backed store when Redis is configured, in-process otherwise."""
    client = get_sync_redis_client()
    if client is None:
        return _memory_store
    return RedisPresenceStore(client)


# =============================================================================
# Roster
# =============================================================================


def compute_roster(
    entries: Iterable[PresenceEntry],
    now: datetime,
    offline_threshold: float,
    exclude_user_id: UUID | None = None,
    sort_by_activity: bool = False,
) -> list[PresenceEntry]:
    """
    Visible roster from raw presence records.

    Records older than the offline threshold are dropped, each user appears
    once (most recent heartbeat wins) and the viewer can be left out. With
    sort_by_activity, users are ordered online, busy, away.
    """
    latest: dict[UUID, PresenceEntry] = {}
    for entry in entries:
        if age_seconds(entry.online_at, now) > offline_threshold:
            continue
        if exclude_user_id is not None and entry.user_id == exclude_user_id:
            continue
        current = latest.get(entry.user_id)
        if current is None or entry.online_at > current.online_at:
            latest[entry.user_id] = entry

    roster = list(latest.values())
    if sort_by_activity:
        roster.sort(key=lambda e: (PRESENCE_SORT_ORDER[e.status], -e.online_at.timestamp()))
    return roster


def online_count(roster: list[PresenceEntry], self_online: bool = True) -> int:
    """Total shown to a user: the roster never lists them, but they count."""
    return len(roster) + (1 if self_online else 0)


# =============================================================================
# Tracker
# =============================================================================


class PresenceTracker:
    """Heartbeat-driven presence for one scope (global or a ticket room)."""

    def __init__(
        self,
        scope: str,
        heartbeat_interval: float,
        offline_threshold: float,
        store: PresenceStore | None = None,
        channel: EventChannel | None = None,
        *,
        sort_by_activity: bool = False,
    ):
        self.scope = scope
        self.heartbeat_interval = heartbeat_interval
        self.offline_threshold = offline_threshold
        self.sort_by_activity = sort_by_activity
        self._store = store
        self._channel = channel or default_channel

    @property
    def store(self) -> PresenceStore:
        return self._store if self._store is not None else get_presence_store()

    def heartbeat(
        self,
        user_id: UUID,
        status: PresenceStatus = PresenceStatus.ONLINE,
        profile: dict | None = None,
        now: datetime | None = None,
    ) -> PresenceEntry | None:
        """Refresh the user's record. Failures are logged and swallowed."""
        now = now or utc_now()
        entry = PresenceEntry(
            user_id=user_id,
            online_at=now,
            status=status,
            profile_snapshot=profile,
        )
        try:
            self.store.upsert(self.scope, entry, self.offline_threshold)
        except Exception as exc:
            logger.warning(
                "Presence heartbeat failed for %s: %s",
                self.scope,
                exc,
                extra={"user_id": str(user_id), "topic": self.scope},
            )
            return None
        self._publish(now)
        return entry

    def leave(self, user_id: UUID, now: datetime | None = None) -> bool:
        try:
            removed = self.store.remove(self.scope, user_id)
        except Exception as exc:
            logger.warning("Presence leave failed for %s: %s", self.scope, exc)
            return False
        if removed:
            self._publish(now or utc_now())
        return removed

    def roster(
        self, now: datetime | None = None, exclude_user_id: UUID | None = None
    ) -> list[PresenceEntry]:
        now = now or utc_now()
        return compute_roster(
            self.store.entries(self.scope, now),
            now,
            self.offline_threshold,
            exclude_user_id=exclude_user_id,
            sort_by_activity=self.sort_by_activity,
        )

    def sweep(self, now: datetime | None = None) -> int:
        """Purge expired records; republish the scope when any expired."""
        now = now or utc_now()
        purged = self.store.purge(self.scope, now)
        if purged:
            logger.debug("Presence sweep removed %d record(s) from %s", purged, self.scope)
            self._publish(now)
        return purged

    def _publish(self, now: datetime) -> None:
        try:
            entries = self.roster(now)
        except Exception as exc:
            logger.warning("Presence sync skipped for %s: %s", self.scope, exc)
            return
        self._channel.publish(
            PresenceSynced(topic=self.scope, scope=self.scope, entries=entries)
        )


_trackers: dict[str, PresenceTracker] = {}
_trackers_lock = threading.Lock()


def get_global_tracker() -> PresenceTracker:
    scope = global_presence_topic()
    with _trackers_lock:
        tracker = _trackers.get(scope)
        if tracker is None:
            tracker = PresenceTracker(
                scope,
                settings.GLOBAL_HEARTBEAT_SECONDS,
                settings.global_offline_seconds,
                sort_by_activity=True,
            )
            _trackers[scope] = tracker
        return tracker


def get_room_tracker(ticket_id: UUID) -> PresenceTracker:
    """Presence of users with the ticket open (same cadence as viewer rows)."""
    scope = room_presence_topic(ticket_id)
    with _trackers_lock:
        tracker = _trackers.get(scope)
        if tracker is None:
            tracker = PresenceTracker(
                scope,
                settings.VIEWER_HEARTBEAT_SECONDS,
                settings.viewer_window_seconds,
            )
            _trackers[scope] = tracker
        return tracker


def active_trackers() -> list[PresenceTracker]:
    with _trackers_lock:
        return list(_trackers.values())


def _release_if_empty(tracker: PresenceTracker, now: datetime) -> bool:
    """Forget a room tracker whose scope has no live records left.

    Trackers hold no records themselves, so a later heartbeat simply gets a
    fresh one from get_room_tracker.
    """
    if tracker.scope == global_presence_topic():
        return False
    try:
        if tracker.store.entries(tracker.scope, now):
            return False
    except Exception as exc:
        logger.warning("Presence release check failed for %s: %s", tracker.scope, exc)
        return False
    with _trackers_lock:
        if _trackers.get(tracker.scope) is not tracker:
            return False
        del _trackers[tracker.scope]
    return True


def leave_room(ticket_id: UUID, user_id: UUID, now: datetime | None = None) -> bool:
    """Remove the user from the ticket room; drop the tracker once the room is empty."""
    now = now or utc_now()
    tracker = get_room_tracker(ticket_id)
    removed = tracker.leave(user_id, now)
    _release_if_empty(tracker, now)
    return removed


def sweep_trackers(now: datetime | None = None) -> int:
    """Sweep every tracker and drop room trackers left empty. Returns records expired."""
    now = now or utc_now()
    expired = 0
    for tracker in active_trackers():
        expired += tracker.sweep(now)
        _release_if_empty(tracker, now)
    return expired


def reset_trackers() -> None:
    """Forget trackers and in-process records (tests)."""
    with _trackers_lock:
        _trackers.clear()
    _memory_store.clear()


# =============================================================================
# Client activity
# =============================================================================


class ActivityState:
    """
    Activity model behind a client's global heartbeat.

    online turns into away after IDLE_AWAY_SECONDS without input. A manual
    busy status survives input and idle time; a manual away lasts until the
    next input. Bringing the tab to the foreground clears either.
    """

    def __init__(self, idle_after: float | None = None, now: datetime | None = None):
        self.idle_after = idle_after if idle_after is not None else settings.IDLE_AWAY_SECONDS
        self.last_activity = now or utc_now()
        self.manual_status: PresenceStatus | None = None

    def status(self, now: datetime | None = None) -> PresenceStatus:
        if self.manual_status is not None:
            return self.manual_status
        if age_seconds(self.last_activity, now or utc_now()) > self.idle_after:
            return PresenceStatus.AWAY
        return PresenceStatus.ONLINE

    def record_activity(self, now: datetime | None = None) -> PresenceStatus:
        self.last_activity = now or utc_now()
        if self.manual_status == PresenceStatus.AWAY:
            self.manual_status = None
        return self.status(self.last_activity)

    def foreground(self, now: datetime | None = None) -> bool:
        """Tab became visible again: back to online. Returns True: heartbeat immediately."""
        self.manual_status = None
        self.record_activity(now)
        return True

    def set_manual_status(self, status: PresenceStatus, now: datetime | None = None) -> PresenceStatus:
        status = PresenceStatus(status)
        if status == PresenceStatus.ONLINE:
            self.manual_status = None
            self.last_activity = now or utc_now()
        else:
            self.manual_status = status
        return self.status(now)

