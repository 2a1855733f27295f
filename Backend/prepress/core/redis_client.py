"""
Shared Redis connection.

One client per process, created on first use. The job status publisher sends
through it and the rate limiter checks it before choosing Redis storage. An
empty REDIS_URL or a failed ping disables Redis for the rest of the process.
"""
import logging
from typing import Optional

import redis

from prepress.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None
_disabled = False


def get_redis() -> Optional[redis.Redis]:
    global _client, _disabled
    if _client is not None or _disabled:
        return _client
    if not settings.REDIS_URL:
        _disabled = True
        return None
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
        client.ping()
        _client = client
        logger.info(f"Connected to Redis at {settings.REDIS_URL}")
    except Exception as e:
        _disabled = True
        logger.warning(f"Redis not available ({e}). Status updates and shared rate limits are off.")
    return _client
