"""Redis-backed cache of active conversation histories."""
from __future__ import annotations

import json
import logging
from typing import List, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..core.metrics import record_persistence_failure
from .turns import Turn, dump_turns, load_turns

logger = logging.getLogger(__name__)

NAMESPACES = ("chat", "session")


class ChatHistoryCache:
    """TTL-bound, version-namespaced store of turn sequences.

    Keys look like ``chat:{version}:{conversation_id}``. A present key means
    the conversation is active. Redis failures never propagate: reads degrade
    to an empty history and writes report ``False``.
    """

    def __init__(self, client: Redis, *, version: str, ttl: int = 3600) -> None:
        self.client = client
        self.version = version
        self.ttl = ttl

    def key(self, conversation_id: str) -> str:
        return f"chat:{self.version}:{conversation_id}"

    async def get(self, conversation_id: str) -> List[Turn]:
        if not conversation_id:
            logger.error("Cache read requested without a conversation id")
            return []
        try:
            raw = await self.client.get(self.key(conversation_id))
        except RedisError as exc:
            logger.warning("Redis error reading history for %s: %s", conversation_id, exc)
            record_persistence_failure("cache", "get")
            return []
        if not raw:
            logger.debug("No cached history for conversation %s", conversation_id)
            return []
        try:
            turns = load_turns(raw)
        except ValueError as exc:
            logger.warning("Discarding undecodable cached history for %s: %s", conversation_id, exc)
            return []
        logger.debug("Loaded %d cached turns for conversation %s", len(turns), conversation_id)
        return turns

    async def put(self, conversation_id: str, turns: Sequence[Turn], ttl: int | None = None) -> bool:
        if not conversation_id:
            logger.error("Cache write requested without a conversation id")
            return False
        payload = json.dumps(dump_turns(turns), ensure_ascii=False)
        try:
            await self.client.set(self.key(conversation_id), payload, ex=ttl or self.ttl)
        except RedisError as exc:
            logger.warning("Redis error saving history for %s: %s", conversation_id, exc)
            record_persistence_failure("cache", "put")
            return False
        return True

    async def delete(self, conversation_id: str) -> bool:
        if not conversation_id:
            return False
        try:
            await self.client.delete(self.key(conversation_id))
        except RedisError as exc:
            logger.warning("Redis error deleting history for %s: %s", conversation_id, exc)
            record_persistence_failure("cache", "delete")
            return False
        return True

    async def exists(self, conversation_id: str) -> bool:
        try:
            return bool(await self.client.exists(self.key(conversation_id)))
        except RedisError as exc:
            logger.warning("Redis error checking %s: %s", conversation_id, exc)
            record_persistence_failure("cache", "exists")
            return False

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def purge_stale_versions(self) -> int:
        """Delete every namespaced key whose version differs from the current one.

        Intended to run once at startup so a change of the stored format never
        needs a blocking migration step.
        """
        removed = 0
        try:
            for namespace in NAMESPACES:
                current_prefix = f"{namespace}:{self.version}:"
                async for key in self.client.scan_iter(match=f"{namespace}:*", count=100):
                    if not key.startswith(current_prefix):
                        await self.client.delete(key)
                        removed += 1
        except RedisError as exc:
            logger.warning("Redis error when clearing old cache: %s", exc)
            record_persistence_failure("cache", "purge")
            return removed
        logger.info("Old cache cleared for version %s (%d keys removed)", self.version, removed)
        return removed
