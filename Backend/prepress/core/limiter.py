"""
Rate Limiting Module
Uses slowapi to protect the preflight API from abuse. Job submission is the
expensive call (it stores the upload and queues tool work), so it gets the
tightest limit. Counters live in Redis when the shared client can reach it,
otherwise in process memory.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from prepress.core.config import settings
from prepress.core.redis_client import get_redis

logger = logging.getLogger(__name__)

storage_uri = settings.REDIS_URL if get_redis() is not None else "memory://"
if settings.REDIS_URL and storage_uri == "memory://":
    logger.warning("Rate Limiter: falling back to memory storage.")

# Key function: rate limit per client IP address
limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=storage_uri,
)

# Endpoint-specific limits (importable constants)
SUBMIT_LIMIT = "10/minute"
STATUS_LIMIT = "120/minute"
REPORT_LIMIT = "30/minute"
TOOLS_LIMIT = "10/minute"

logger.info(f"Rate limiting {'ENABLED' if settings.RATE_LIMIT_ENABLED else 'DISABLED'} ({storage_uri.split(':', 1)[0]} storage)")
