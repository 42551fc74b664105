"""Explicit wiring of the conversation engine's collaborators."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import Settings, get_settings
from ..core.redis_client import get_redis_client
from .cache import ChatHistoryCache
from .coordinator import HistoryCoordinator
from .generation import GenerationClient, OllamaChatClient
from .history import HistoryQueryService
from .orchestrator import StreamOrchestrator
from .session import SessionBinder
from .store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class ChatServices:
    """Every component a request handler needs, built once per application."""

    settings: Settings
    cache: ChatHistoryCache
    store: ConversationStore
    coordinator: HistoryCoordinator
    binder: SessionBinder
    orchestrator: StreamOrchestrator
    history: HistoryQueryService


def build_chat_services(
    settings: Settings | None = None,
    *,
    redis: Redis | None = None,
    session_factory: sessionmaker[Session] | None = None,
    generator: GenerationClient | None = None,
) -> ChatServices:
    """Wire the engine from settings; any collaborator may be supplied instead."""

    settings = settings or get_settings()
    if session_factory is None:
        from ..core.db import SessionLocal

        session_factory = SessionLocal
    if redis is None:
        redis = get_redis_client(settings.REDIS_URL)
    if generator is None:
        generator = OllamaChatClient(
            settings.GENERATION_HOST,
            model=settings.GENERATION_MODEL,
            fallback_host=settings.GENERATION_FALLBACK_HOST,
            timeout=settings.GENERATION_TIMEOUT,
        )

    cache = ChatHistoryCache(redis, version=settings.CACHE_VERSION, ttl=settings.CACHE_TTL)
    store = ConversationStore(session_factory)
    coordinator = HistoryCoordinator(
        cache,
        store,
        system_prompt=settings.SYSTEM_PROMPT,
        max_history=settings.CHAT_MAX_HISTORY,
    )
    orchestrator = StreamOrchestrator(
        generator,
        coordinator,
        system_prompt=settings.SYSTEM_PROMPT,
        max_tokens=settings.GENERATION_MAX_TOKENS,
        temperature=settings.GENERATION_TEMPERATURE,
        idle_timeout=settings.GENERATION_IDLE_TIMEOUT,
    )
    logger.info(
        "Chat services ready (cache version %s, model %s)",
        settings.CACHE_VERSION,
        settings.GENERATION_MODEL,
    )
    return ChatServices(
        settings=settings,
        cache=cache,
        store=store,
        coordinator=coordinator,
        binder=SessionBinder(coordinator, orchestrator),
        orchestrator=orchestrator,
        history=HistoryQueryService(
            store,
            limit=settings.HISTORY_LIST_LIMIT,
            preview_chars=settings.HISTORY_PREVIEW_CHARS,
        ),
    )


def get_chat_services(request: Request) -> ChatServices:
    """FastAPI dependency returning the container stored on ``app.state``."""
    return request.app.state.chat_services
