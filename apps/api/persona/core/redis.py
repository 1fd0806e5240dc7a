"""Process-wide redis.asyncio client for the shared conversation cache.

Only created when ``CONVERSATION_CACHE_BACKEND=redis``; the in-memory backend
never touches Redis.
"""

import asyncio

import redis.asyncio as redis
import structlog

from persona.core.config import settings

logger = structlog.get_logger(__name__)

_client: redis.Redis | None = None
_client_lock = asyncio.Lock()


def _display_url(url: str) -> str:
    """Drop credentials from a redis:// URL before logging it."""
    return url.rpartition("@")[2]


async def get_redis(url: str | None = None) -> redis.Redis:
    """Shared client; the first caller connects and pings, later callers reuse it."""
    global _client
    if _client is not None:
        return _client

    async with _client_lock:
        if _client is None:
            target = url or settings.REDIS_URL
            client = redis.from_url(target, decode_responses=True, max_connections=50)
            await client.ping()
            logger.info("redis.connected", url=_display_url(target))
            _client = client
    return _client


async def close_redis() -> None:
    global _client
    if _client is None:
        return
    client, _client = _client, None
    await client.aclose()
    logger.info("redis.closed")
