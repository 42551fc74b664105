"""Redis client helpers for the conversation cache."""
from __future__ import annotations

from redis.asyncio import Redis

from .config import settings


def get_redis_client(url: str | None = None) -> Redis:
    """Return an asyncio Redis client that decodes responses to ``str``.

    The connection pool is created lazily, so building the client never
    touches the network.
    """
    return Redis.from_url(url or settings.REDIS_URL, decode_responses=True)
