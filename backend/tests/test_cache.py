from __future__ import annotations

import json

import pytest

from backend.chatstream.chat.cache import ChatHistoryCache
from backend.chatstream.chat.turns import Turn

from conftest import BrokenRedis, FakeRedis


@pytest.mark.asyncio
async def test_put_then_get_uses_versioned_key_and_ttl(fake_redis: FakeRedis, cache: ChatHistoryCache) -> None:
    turns = [Turn.system("sys"), Turn.user("Hello")]

    assert await cache.put("abc", turns)

    assert "chat:1.0.0:abc" in fake_redis.data
    assert fake_redis.ttls["chat:1.0.0:abc"] == 3600
    assert json.loads(fake_redis.data["chat:1.0.0:abc"])[1] == {"role": "user", "content": "Hello"}
    assert await cache.get("abc") == turns
    assert await cache.exists("abc")


@pytest.mark.asyncio
async def test_get_on_miss_or_garbage_returns_empty(fake_redis: FakeRedis, cache: ChatHistoryCache) -> None:
    assert await cache.get("missing") == []

    fake_redis.data["chat:1.0.0:broken"] = "{not json"
    assert await cache.get("broken") == []

    fake_redis.data["chat:1.0.0:scalar"] = json.dumps({"role": "user"})
    assert await cache.get("scalar") == []


@pytest.mark.asyncio
async def test_delete_removes_active_marker(cache: ChatHistoryCache) -> None:
    await cache.put("abc", [Turn.user("Hello")])
    assert await cache.delete("abc")
    assert not await cache.exists("abc")


@pytest.mark.asyncio
async def test_redis_failures_degrade_instead_of_raising() -> None:
    cache = ChatHistoryCache(BrokenRedis(), version="1.0.0")

    assert await cache.get("abc") == []
    assert await cache.put("abc", [Turn.user("Hello")]) is False
    assert await cache.delete("abc") is False
    assert await cache.exists("abc") is False
    assert await cache.ping() is False


@pytest.mark.asyncio
async def test_purge_stale_versions_keeps_current_namespace(fake_redis: FakeRedis) -> None:
    fake_redis.data.update(
        {
            "chat:0.9.0:old": "[]",
            "chat:1.0.0:current": "[]",
            "session:0.9.0:old": "{}",
            "session:1.0.0:current": "{}",
            "unrelated:key": "x",
        }
    )
    cache = ChatHistoryCache(fake_redis, version="1.0.0")

    removed = await cache.purge_stale_versions()

    assert removed == 2
    assert set(fake_redis.data) == {"chat:1.0.0:current", "session:1.0.0:current", "unrelated:key"}
