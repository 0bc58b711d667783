"""Rate limiting configuration for the helpdesk API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from helpdesk.core.config import settings
from helpdesk.core.redis_client import get_redis_url

logger = logging.getLogger(__name__)

# Falls back to in-memory if Redis is not available (dev/test mode)
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
MESSAGE_LIMIT = f"{max(settings.RATE_LIMIT_MESSAGES, 1)}/minute"


def _storage_uri() -> str:
    url = get_redis_url()
    if IS_TESTING or not url:
        return "memory://"
    try:
        import redis

        # Test connection upfront
        redis.from_url(url, socket_connect_timeout=1).ping()
        return url
    except Exception as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return "memory://"


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_storage_uri(),
    enabled=not IS_TESTING,
)
