"""Binding of a client session to its single active conversation."""
from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
import weakref
from typing import MutableMapping

from .coordinator import ConversationContext, HistoryCoordinator
from .orchestrator import StreamOrchestrator

logger = logging.getLogger(__name__)

SESSION_CONVERSATION_KEY = "conversation_id"
SESSION_TEMPORARY_KEY = "conversation_temporary"
SESSION_BINDING_KEY = "binding_key"

SessionBag = MutableMapping[str, object]


def new_conversation_id() -> str:
    return str(uuid.uuid4())


class SessionBinder:
    """Maps a session bag to exactly one active conversation id.

    The bag is whatever mutable mapping the identity layer hands us (the
    Starlette cookie session in production, a plain dict in tests).
    """

    def __init__(self, coordinator: HistoryCoordinator, orchestrator: StreamOrchestrator | None = None) -> None:
        self.coordinator = coordinator
        self.orchestrator = orchestrator
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def current(self, session: SessionBag, owner_id: uuid.UUID | None = None) -> ConversationContext | None:
        conversation_id = session.get(SESSION_CONVERSATION_KEY)
        if not conversation_id:
            return None
        return ConversationContext(
            conversation_id=str(conversation_id),
            owner_id=owner_id,
            temporary=bool(session.get(SESSION_TEMPORARY_KEY, False)),
        )

    def bind(
        self,
        session: SessionBag,
        conversation_id: str,
        *,
        temporary: bool = False,
        owner_id: uuid.UUID | None = None,
    ) -> ConversationContext:
        session[SESSION_CONVERSATION_KEY] = conversation_id
        session[SESSION_TEMPORARY_KEY] = temporary
        return ConversationContext(conversation_id=conversation_id, owner_id=owner_id, temporary=temporary)

    def resolve_active(
        self,
        session: SessionBag,
        *,
        temporary: bool = False,
        owner_id: uuid.UUID | None = None,
    ) -> ConversationContext:
        """Return the bound conversation, binding a fresh one in the declared mode if none is."""

        bound = self.current(session, owner_id)
        if bound is not None:
            return bound
        context = self.bind(session, new_conversation_id(), temporary=temporary, owner_id=owner_id)
        logger.info(
            "Bound new %s conversation %s",
            "temporary" if temporary else "durable",
            context.conversation_id,
        )
        return context

    def _lock_for(self, session: SessionBag) -> asyncio.Lock:
        key = session.get(SESSION_BINDING_KEY)
        if not key:
            key = secrets.token_urlsafe(16)
            session[SESSION_BINDING_KEY] = key
        lock = self._locks.get(str(key))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[str(key)] = lock
        return lock

    async def reset(
        self,
        session: SessionBag,
        *,
        was_temporary: bool,
        owner_id: uuid.UUID | None = None,
    ) -> str:
        """Finalize the bound conversation and bind a fresh id in the same mode.

        Resets on one session are serialised, so the previous conversation is
        always finalized before the next id is handed out. A stream still
        running for it is stopped first and its partial reply kept, so no
        history write can land after the cache entry is gone.
        """
        lock = self._lock_for(session)
        async with lock:
            previous = self.current(session, owner_id)
            if previous is not None:
                if self.orchestrator is not None:
                    await self.orchestrator.stop(previous.conversation_id)
                # Either side declaring temporary is enough to keep it out of the durable store.
                temporary = was_temporary or previous.temporary
                await self.coordinator.finalize(
                    previous.conversation_id, temporary=temporary, owner_id=owner_id
                )

            context = self.bind(session, new_conversation_id(), temporary=was_temporary, owner_id=owner_id)
            if not was_temporary:
                await self.coordinator.create_empty(context.conversation_id, owner_id)
            logger.info(
                "Reset session conversation %s -> %s (temporary=%s)",
                previous.conversation_id if previous else None,
                context.conversation_id,
                was_temporary,
            )
            return context.conversation_id
