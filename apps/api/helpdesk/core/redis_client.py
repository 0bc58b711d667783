"""Redis clients for the event backplane and the shared presence store.

Redis is optional. With no URL (or ``memory://``) every getter returns None
and callers fall back to in-process behavior.
"""

from __future__ import annotations

import os

from helpdesk.core.config import settings

IN_PROCESS_URL = "memory://"

POOL_SIZE = 20
CONNECT_TIMEOUT_SECONDS = 2.0
READ_TIMEOUT_SECONDS = 2.0
HEALTH_CHECK_SECONDS = 30

# "sync" -> redis.Redis, "async" -> redis.asyncio.Redis
_clients: dict[str, object] = {}


def get_redis_url() -> str | None:
    url = (os.getenv("REDIS_URL") or settings.REDIS_URL or "").strip()
    if not url or url.lower() == IN_PROCESS_URL:
        return None
    return url


def _pool_size() -> int:
    raw = os.getenv("REDIS_MAX_CONNECTIONS", "").strip()
    try:
        size = int(raw)
    except ValueError:
        return POOL_SIZE
    return size if size > 0 else POOL_SIZE


def _pool_options(*, read_timeout: float | None) -> dict:
    options = {
        "max_connections": _pool_size(),
        "socket_connect_timeout": CONNECT_TIMEOUT_SECONDS,
        "health_check_interval": HEALTH_CHECK_SECONDS,
        "retry_on_timeout": True,
        "decode_responses": True,
    }
    if read_timeout is not None:
        options["socket_timeout"] = read_timeout
    return options


def get_sync_redis_client():
    """Client for publishes and presence writes made from request threads."""
    url = get_redis_url()
    if not url:
        return None
    client = _clients.get("sync")
    if client is None:
        import redis

        pool = redis.ConnectionPool.from_url(url, **_pool_options(read_timeout=READ_TIMEOUT_SECONDS))
        client = _clients["sync"] = redis.Redis(connection_pool=pool)
    return client


def get_async_redis_client():
    """Client for the backplane listener.

    Subscriptions block on reads between events, so this pool has no read
    timeout.
    """
    url = get_redis_url()
    if not url:
        return None
    client = _clients.get("async")
    if client is None:
        from redis import asyncio as aioredis

        pool = aioredis.ConnectionPool.from_url(url, **_pool_options(read_timeout=None))
        client = _clients["async"] = aioredis.Redis(connection_pool=pool)
    return client


def reset_clients() -> None:
    """Forget cached clients; the next getter call builds fresh pools."""
    _clients.clear()
