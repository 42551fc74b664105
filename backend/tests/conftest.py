from __future__ import annotations

import asyncio
import base64
import fnmatch
import json
import sys
import uuid
from collections import deque
from collections.abc import Iterator
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import itsdangerous
import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import JSON

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.chatstream.chat.cache import ChatHistoryCache
from backend.chatstream.chat.coordinator import HistoryCoordinator
from backend.chatstream.chat.generation import GenerationEvent
from backend.chatstream.chat.services import ChatServices, build_chat_services
from backend.chatstream.chat.store import ConversationStore
from backend.chatstream.core.config import settings
from backend.chatstream.core.rate_limiter import limiter
from backend.chatstream.main import create_app
from backend.chatstream.models import Base

SYSTEM_PROMPT = "You are a test assistant."

# Script marker: block the fake generator until the consumer goes away.
HOLD = "hold"


class FakeRedis:
    """The slice of ``redis.asyncio.Redis`` the cache uses, held in a dict."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)

    async def ping(self) -> bool:
        return True

    async def scan_iter(self, match: str | None = None, count: int | None = None) -> AsyncIterator[str]:
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


class BrokenRedis(FakeRedis):
    """Every call fails the way an unreachable server does."""

    async def get(self, key: str) -> str | None:
        raise RedisConnectionError("redis down")

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        raise RedisConnectionError("redis down")

    async def delete(self, *keys: str) -> int:
        raise RedisConnectionError("redis down")

    async def exists(self, *keys: str) -> int:
        raise RedisConnectionError("redis down")

    async def ping(self) -> bool:
        raise RedisConnectionError("redis down")


class FakeGenerationClient:
    """Replays scripted generation streams, one script per call.

    A script item is a ``GenerationEvent`` to yield, an exception to raise or
    ``HOLD`` to block until the stream is cancelled.
    """

    def __init__(self, *scripts: Sequence[Any]) -> None:
        self.scripts: deque[Sequence[Any]] = deque(scripts)
        self.calls: list[list[Any]] = []
        self.closed = 0

    def queue(self, *items: Any) -> None:
        self.scripts.append(items)

    async def stream(self, turns, *, max_tokens: int, temperature: float) -> AsyncIterator[GenerationEvent]:
        self.calls.append(list(turns))
        script = self.scripts.popleft() if self.scripts else (GenerationEvent.delta("ok"), GenerationEvent.end())
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if item == HOLD:
                    await asyncio.Event().wait()
                    continue
                yield item
        finally:
            self.closed += 1


def reply(*parts: str) -> tuple[GenerationEvent, ...]:
    return (*[GenerationEvent.delta(part) for part in parts], GenerationEvent.end())


def parse_sse(body: str) -> list[dict[str, Any]]:
    events = []
    for frame in body.split("\n\n"):
        frame = frame.strip()
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


def _patch_json_columns() -> None:
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if column.type.__class__.__name__ == "JSONB":
                column.type = JSON()


@pytest.fixture()
def engine() -> Iterator:
    _patch_json_columns()
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _register_functions(dbapi_connection, _):  # pragma: no cover - sqlite setup
        dbapi_connection.create_function("gen_random_uuid", 0, lambda: str(uuid.uuid4()))

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def generator() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture()
def store(session_factory: sessionmaker) -> ConversationStore:
    return ConversationStore(session_factory)


@pytest.fixture()
def cache(fake_redis: FakeRedis) -> ChatHistoryCache:
    return ChatHistoryCache(fake_redis, version="1.0.0", ttl=3600)


@pytest.fixture()
def coordinator(cache: ChatHistoryCache, store: ConversationStore) -> HistoryCoordinator:
    return HistoryCoordinator(cache, store, system_prompt=SYSTEM_PROMPT, max_history=10)


@pytest.fixture()
def services(
    fake_redis: FakeRedis, session_factory: sessionmaker, generator: FakeGenerationClient
) -> ChatServices:
    test_settings = settings.model_copy(update={"SYSTEM_PROMPT": SYSTEM_PROMPT, "CACHE_VERSION": "1.0.0"})
    return build_chat_services(
        test_settings,
        redis=fake_redis,
        session_factory=session_factory,
        generator=generator,
    )


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch, services: ChatServices) -> Iterator[TestClient]:
    monkeypatch.setattr(limiter, "enabled", False)
    with TestClient(create_app(services)) as client:
        yield client


@pytest.fixture()
def auth_session() -> dict[str, str]:
    user_id = str(uuid.uuid4())
    csrf_token = "test-csrf-token"
    signer = itsdangerous.TimestampSigner(settings.SESSION_SECRET)
    payload = base64.b64encode(
        json.dumps({"user_id": user_id, "csrf_token": csrf_token}).encode("utf-8")
    )
    cookie = signer.sign(payload).decode("utf-8")
    return {"cookie": cookie, "user_id": user_id, "csrf_token": csrf_token}
