"""Tests for presence: roster computation, TTL stores, trackers and activity."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from helpdesk.db.enums import PresenceStatus
from helpdesk.schemas.presence import PresenceEntry
from helpdesk.services import presence_service
from helpdesk.services.presence_service import (
    ActivityState,
    MemoryPresenceStore,
    PresenceTracker,
    compute_roster,
    online_count,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _entry(user_id, seconds_ago=0, status=PresenceStatus.ONLINE):
    return PresenceEntry(user_id=user_id, online_at=NOW - timedelta(seconds=seconds_ago), status=status)


class RecordingChannel:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


class BrokenStore:
    def upsert(self, scope, entry, ttl):
        raise ConnectionError("redis unavailable")

    def remove(self, scope, user_id):
        raise ConnectionError("redis unavailable")

    def entries(self, scope, now):
        raise ConnectionError("redis unavailable")

    def purge(self, scope, now):
        raise ConnectionError("redis unavailable")


# =============================================================================
# compute_roster
# =============================================================================


def test_stale_entry_absent():
    user = uuid.uuid4()
    roster = compute_roster([_entry(user, seconds_ago=65)], NOW, offline_threshold=60)
    assert roster == []


@pytest.mark.parametrize("threshold", [30, 60, 90])
def test_roster_never_contains_entries_older_than_threshold(threshold):
    entries = [_entry(uuid.uuid4(), seconds_ago=age) for age in (0, 10, 29, 45, 59, 61, 89, 91, 300)]

    roster = compute_roster(entries, NOW, offline_threshold=threshold)

    assert roster
    assert all((NOW - e.online_at).total_seconds() <= threshold for e in roster)
    assert len(roster) == sum(1 for e in entries if (NOW - e.online_at).total_seconds() <= threshold)


def test_each_user_listed_once_with_newest_heartbeat():
    user = uuid.uuid4()
    entries = [_entry(user, 20, PresenceStatus.AWAY), _entry(user, 5, PresenceStatus.BUSY)]

    roster = compute_roster(entries, NOW, 60)

    assert len(roster) == 1
    assert roster[0].status == PresenceStatus.BUSY
    assert roster[0].online_at == NOW - timedelta(seconds=5)


def test_exclude_self():
    me, other = uuid.uuid4(), uuid.uuid4()
    roster = compute_roster([_entry(me), _entry(other)], NOW, 60, exclude_user_id=me)
    assert [e.user_id for e in roster] == [other]


def test_sort_by_activity():
    away, busy, online_old, online_new = (uuid.uuid4() for _ in range(4))
    entries = [
        _entry(away, 1, PresenceStatus.AWAY),
        _entry(busy, 1, PresenceStatus.BUSY),
        _entry(online_old, 30),
        _entry(online_new, 2),
    ]

    roster = compute_roster(entries, NOW, 60, sort_by_activity=True)

    assert [e.user_id for e in roster] == [online_new, online_old, busy, away]


def test_online_count_includes_self():
    roster = [_entry(uuid.uuid4()), _entry(uuid.uuid4())]
    assert online_count(roster) == 3
    assert online_count(roster, self_online=False) == 2
    assert online_count([]) == 1


# =============================================================================
# MemoryPresenceStore
# =============================================================================


def test_memory_store_expiry_and_purge():
    store = MemoryPresenceStore()
    fresh, stale = uuid.uuid4(), uuid.uuid4()
    store.upsert("scope", _entry(fresh, 0), ttl=60)
    store.upsert("scope", _entry(stale, 90), ttl=60)

    assert [e.user_id for e in store.entries("scope", NOW)] == [fresh]
    assert store.purge("scope", NOW) == 1
    assert store.purge("scope", NOW) == 0
    assert store.remove("scope", fresh) is True
    assert store.remove("scope", fresh) is False
    assert store.entries("other", NOW) == []


def test_memory_store_forgets_empty_scopes():
    store = MemoryPresenceStore()
    leaver, idle = uuid.uuid4(), uuid.uuid4()
    store.upsert("room:a", _entry(leaver, 0), ttl=60)
    store.upsert("room:b", _entry(idle, 90), ttl=60)

    store.remove("room:a", leaver)
    store.purge("room:b", NOW)

    assert store.scopes() == []


def test_memory_store_upsert_replaces():
    store = MemoryPresenceStore()
    user = uuid.uuid4()
    store.upsert("scope", _entry(user, 50), ttl=60)
    store.upsert("scope", _entry(user, 0, PresenceStatus.BUSY), ttl=60)

    entries = store.entries("scope", NOW)
    assert len(entries) == 1
    assert entries[0].status == PresenceStatus.BUSY


# =============================================================================
# PresenceTracker
# =============================================================================


def _tracker(store=None, channel=None, **kwargs):
    return PresenceTracker(
        "presence:test",
        heartbeat_interval=15,
        offline_threshold=60,
        store=store or MemoryPresenceStore(),
        channel=channel or RecordingChannel(),
        **kwargs,
    )


def test_two_heartbeats_from_same_user_show_once():
    channel = RecordingChannel()
    tracker = _tracker(channel=channel)
    user = uuid.uuid4()

    tracker.heartbeat(user, now=NOW - timedelta(seconds=10))
    tracker.heartbeat(user, now=NOW)

    roster = tracker.roster(NOW)
    assert len(roster) == 1
    assert roster[0].online_at == NOW
    assert len(channel.events) == 2
    last = channel.events[-1]
    assert last.kind == "presence_synced"
    assert last.scope == "presence:test"
    assert [e.user_id for e in last.entries] == [user]


def test_roster_excludes_viewer():
    tracker = _tracker()
    me, other = uuid.uuid4(), uuid.uuid4()
    tracker.heartbeat(me, now=NOW)
    tracker.heartbeat(other, now=NOW)

    assert [e.user_id for e in tracker.roster(NOW, exclude_user_id=me)] == [other]


def test_missed_heartbeats_age_out():
    tracker = _tracker()
    user = uuid.uuid4()
    tracker.heartbeat(user, now=NOW - timedelta(seconds=65))

    assert tracker.roster(NOW) == []


def test_sweep_purges_and_republishes():
    channel = RecordingChannel()
    tracker = _tracker(channel=channel)
    gone, here = uuid.uuid4(), uuid.uuid4()
    tracker.heartbeat(gone, now=NOW - timedelta(seconds=120))
    tracker.heartbeat(here, now=NOW)
    channel.events.clear()

    assert tracker.sweep(NOW) == 1
    assert len(channel.events) == 1
    assert [e.user_id for e in channel.events[0].entries] == [here]

    # Nothing left to purge: no event
    assert tracker.sweep(NOW) == 0
    assert len(channel.events) == 1


def test_leave_removes_and_publishes_once():
    channel = RecordingChannel()
    tracker = _tracker(channel=channel)
    user = uuid.uuid4()
    tracker.heartbeat(user, now=NOW)
    channel.events.clear()

    assert tracker.leave(user, now=NOW) is True
    assert tracker.leave(user, now=NOW) is False
    assert len(channel.events) == 1
    assert channel.events[0].entries == []


def test_heartbeat_failure_is_swallowed():
    channel = RecordingChannel()
    tracker = _tracker(store=BrokenStore(), channel=channel)

    assert tracker.heartbeat(uuid.uuid4(), now=NOW) is None
    assert tracker.leave(uuid.uuid4(), now=NOW) is False
    assert channel.events == []


def test_heartbeat_carries_profile_snapshot():
    tracker = _tracker()
    user = uuid.uuid4()
    entry = tracker.heartbeat(user, PresenceStatus.BUSY, {"full_name": "Alex Agent"}, now=NOW)

    assert entry.profile_snapshot == {"full_name": "Alex Agent"}
    assert tracker.roster(NOW)[0].status == PresenceStatus.BUSY


def test_tracker_registry():
    global_tracker = presence_service.get_global_tracker()
    assert global_tracker is presence_service.get_global_tracker()
    assert global_tracker.scope == "presence:global"
    assert global_tracker.offline_threshold == 60
    assert global_tracker.sort_by_activity is True

    ticket_id = uuid.uuid4()
    room = presence_service.get_room_tracker(ticket_id)
    assert room.scope == f"presence:ticket:{ticket_id}"
    assert room.offline_threshold == 90
    assert set(presence_service.active_trackers()) == {global_tracker, room}

    presence_service.reset_trackers()
    assert presence_service.active_trackers() == []


def test_room_tracker_released_once_room_is_empty():
    ticket_id = uuid.uuid4()
    first, second = uuid.uuid4(), uuid.uuid4()
    room = presence_service.get_room_tracker(ticket_id)
    room.heartbeat(first)
    room.heartbeat(second)

    presence_service.leave_room(ticket_id, first)
    assert presence_service.active_trackers() == [room]

    presence_service.leave_room(ticket_id, second)
    assert presence_service.active_trackers() == []

    # A later heartbeat gets a fresh tracker for the same scope
    assert presence_service.get_room_tracker(ticket_id).scope == room.scope


def test_sweep_drops_expired_rooms_and_keeps_global():
    global_tracker = presence_service.get_global_tracker()
    global_tracker.heartbeat(uuid.uuid4(), now=NOW)
    for _ in range(5):
        presence_service.get_room_tracker(uuid.uuid4()).heartbeat(uuid.uuid4(), now=NOW)
    busy_room = presence_service.get_room_tracker(uuid.uuid4())
    busy_room.heartbeat(uuid.uuid4(), now=NOW + timedelta(seconds=80))

    expired = presence_service.sweep_trackers(NOW + timedelta(seconds=100))

    assert expired == 6
    assert set(presence_service.active_trackers()) == {global_tracker, busy_room}


def test_default_store_is_in_process_without_redis():
    assert isinstance(presence_service.get_presence_store(), MemoryPresenceStore)


# =============================================================================
# RedisPresenceStore
# =============================================================================


class FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        def queue(*args):
            self._calls.append((name, args))
            return self
        return queue

    def execute(self):
        return [getattr(self._redis, name)(*args) for name, args in self._calls]


class FakeRedis:
    """Just enough of the redis client for the presence store."""

    def __init__(self):
        self.hashes = {}
        self.zsets = {}

    def pipeline(self):
        return FakePipeline(self)

    def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value
        return 1

    def hdel(self, key, *fields):
        bucket = self.hashes.get(key, {})
        return sum(1 for f in fields if bucket.pop(f, None) is not None)

    def hmget(self, key, fields):
        bucket = self.hashes.get(key, {})
        return [bucket.get(f) for f in fields]

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrem(self, key, *members):
        bucket = self.zsets.get(key, {})
        return sum(1 for m in members if bucket.pop(m, None) is not None)

    def zrangebyscore(self, key, low, high):
        def bound(value, default):
            if value in ("-inf", "+inf"):
                return default, False
            if isinstance(value, str) and value.startswith("("):
                return float(value[1:]), True
            return float(value), False

        lo, _ = bound(low, float("-inf"))
        hi, exclusive = bound(high, float("inf"))
        return [
            member
            for member, score in self.zsets.get(key, {}).items()
            if score >= lo and (score < hi if exclusive else score <= hi)
        ]


def test_redis_store_roundtrip_and_purge():
    redis = FakeRedis()
    store = presence_service.RedisPresenceStore(redis)
    fresh, stale = uuid.uuid4(), uuid.uuid4()

    store.upsert("presence:global", _entry(fresh, 0, PresenceStatus.BUSY), ttl=60)
    store.upsert("presence:global", _entry(stale, 90), ttl=60)

    entries = store.entries("presence:global", NOW)
    assert [(e.user_id, e.status) for e in entries] == [(fresh, PresenceStatus.BUSY)]

    assert store.purge("presence:global", NOW) == 1
    assert str(stale) not in redis.hashes["helpdesk:presence:presence:global:records"]
    assert store.remove("presence:global", fresh) is True
    assert store.entries("presence:global", NOW) == []


def test_redis_store_skips_malformed_records():
    redis = FakeRedis()
    store = presence_service.RedisPresenceStore(redis)
    user = uuid.uuid4()
    store.upsert("s", _entry(user), ttl=60)
    redis.hashes["helpdesk:presence:s:records"][str(user)] = "not json"

    assert store.entries("s", NOW) == []


# =============================================================================
# ActivityState
# =============================================================================


def test_idle_turns_away():
    state = ActivityState(idle_after=120, now=NOW)
    assert state.status(NOW + timedelta(seconds=60)) == PresenceStatus.ONLINE
    assert state.status(NOW + timedelta(seconds=121)) == PresenceStatus.AWAY

    assert state.record_activity(NOW + timedelta(seconds=130)) == PresenceStatus.ONLINE


def test_manual_busy_sticks_through_activity_and_idle():
    state = ActivityState(idle_after=120, now=NOW)
    state.set_manual_status(PresenceStatus.BUSY, NOW)

    assert state.record_activity(NOW + timedelta(seconds=5)) == PresenceStatus.BUSY
    assert state.status(NOW + timedelta(seconds=600)) == PresenceStatus.BUSY

    assert state.set_manual_status(PresenceStatus.ONLINE, NOW + timedelta(seconds=601)) == PresenceStatus.ONLINE


def test_manual_away_cleared_by_input_or_foreground():
    state = ActivityState(idle_after=120, now=NOW)
    state.set_manual_status(PresenceStatus.AWAY, NOW)
    assert state.status(NOW) == PresenceStatus.AWAY

    assert state.record_activity(NOW + timedelta(seconds=1)) == PresenceStatus.ONLINE

    state.set_manual_status("away", NOW + timedelta(seconds=2))
    assert state.foreground(NOW + timedelta(seconds=3)) is True
    assert state.status(NOW + timedelta(seconds=3)) == PresenceStatus.ONLINE


def test_foreground_resets_manual_busy_to_online():
    state = ActivityState(idle_after=120, now=NOW)
    state.set_manual_status(PresenceStatus.BUSY, NOW)

    assert state.foreground(NOW + timedelta(seconds=30)) is True
    assert state.manual_status is None
    assert state.status(NOW + timedelta(seconds=30)) == PresenceStatus.ONLINE
