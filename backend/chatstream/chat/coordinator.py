"""Cache-aside coordination between the Redis history cache and the durable store.

The coordinator is the only component that mutates either store. Writes are
last-write-wins and never transactional across the two stores: once tokens
have reached the user, a failed durable write is logged and absorbed rather
than surfaced.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List

from fastapi.concurrency import run_in_threadpool

from ..core.errors import NotFoundError, PersistenceError, ValidationError
from .cache import ChatHistoryCache
from .store import ConversationRecord, ConversationStore, ensure_access
from .turns import Turn, has_real_turns, is_duplicate_user_turn, trim_history

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConversationContext:
    """Identity and persistence mode of the conversation a request acts on."""

    conversation_id: str
    owner_id: uuid.UUID | None = None
    temporary: bool = False


class HistoryCoordinator:
    def __init__(
        self,
        cache: ChatHistoryCache,
        store: ConversationStore,
        *,
        system_prompt: str,
        max_history: int,
    ) -> None:
        self.cache = cache
        self.store = store
        self.system_prompt = system_prompt
        self.max_history = max_history

    async def current_turns(self, ctx: ConversationContext) -> List[Turn]:
        """Return the cached history, falling back to the durable copy on a miss."""

        turns = await self.cache.get(ctx.conversation_id)
        if turns or ctx.temporary:
            return turns
        try:
            record = await run_in_threadpool(self.store.find_by_id, ctx.conversation_id, ctx.owner_id)
        except PersistenceError:
            logger.exception("Durable fallback failed for conversation %s", ctx.conversation_id)
            return []
        if record is None or not record.turns:
            return []
        logger.info("Rehydrating conversation %s from the durable store", ctx.conversation_id)
        return record.turns

    async def append_user_turn(self, ctx: ConversationContext, text: str) -> List[Turn]:
        content = (text or "").strip()
        if not content:
            raise ValidationError("Message is required")

        turns = await self.current_turns(ctx)
        if not turns:
            turns = [Turn.system(self.system_prompt)]

        if is_duplicate_user_turn(turns, content):
            logger.info("Duplicate user message detected for %s, skipping append", ctx.conversation_id)
            return turns

        turns = [*turns, Turn.user(content)]
        await self.cache.put(ctx.conversation_id, turns)

        if ctx.temporary:
            logger.debug("Temporary conversation %s - skipping durable storage", ctx.conversation_id)
            return turns

        try:
            if not await run_in_threadpool(self.store.exists, ctx.conversation_id):
                await run_in_threadpool(
                    self.store.upsert,
                    ConversationRecord(
                        conversation_id=ctx.conversation_id,
                        owner_id=ctx.owner_id,
                        turns=turns,
                        started_at=datetime.now(timezone.utc),
                    ),
                )
                logger.info("Created durable record for conversation %s", ctx.conversation_id)
        except PersistenceError:
            logger.exception("Durable create failed for conversation %s", ctx.conversation_id)
        return turns

    async def append_assistant_turn(self, ctx: ConversationContext, text: str) -> List[Turn]:
        turns = await self.current_turns(ctx)
        turns = trim_history([*turns, Turn.assistant(text)], self.max_history)
        await self.cache.put(ctx.conversation_id, turns)

        if not ctx.temporary:
            try:
                await run_in_threadpool(
                    self.store.upsert,
                    ConversationRecord(
                        conversation_id=ctx.conversation_id,
                        owner_id=ctx.owner_id,
                        turns=turns,
                    ),
                )
            except PersistenceError:
                logger.exception("Durable update failed for conversation %s", ctx.conversation_id)
        return turns

    async def finalize(
        self,
        conversation_id: str,
        *,
        temporary: bool,
        owner_id: uuid.UUID | None = None,
    ) -> bool:
        """End a conversation: flush it durably when worth keeping, then drop the cache entry.

        Returns whether a durable write happened.
        """
        turns = await self.cache.get(conversation_id)
        persisted = False
        try:
            if not temporary and not turns:
                # Expired or unreachable cache: the durable copy already holds every written turn.
                record = await run_in_threadpool(self.store.find_by_id, conversation_id)
                turns = record.turns if record is not None else []
            if temporary:
                logger.info("Temporary conversation %s - not saving to database", conversation_id)
            elif not has_real_turns(turns):
                logger.info("Skipping durable save for %s: no user or assistant turns", conversation_id)
            else:
                await run_in_threadpool(
                    self.store.upsert,
                    ConversationRecord(
                        conversation_id=conversation_id,
                        owner_id=owner_id,
                        turns=turns,
                        ended_at=datetime.now(timezone.utc),
                    ),
                )
                persisted = True
                logger.info("Finalized conversation %s with %d turns", conversation_id, len(turns))
        except PersistenceError:
            logger.exception("Error finalizing conversation %s", conversation_id)
        finally:
            await self.cache.delete(conversation_id)
        return persisted

    async def create_empty(self, conversation_id: str, owner_id: uuid.UUID | None = None) -> bool:
        """Eagerly create an empty durable record so lookups by id succeed immediately."""

        try:
            await run_in_threadpool(
                self.store.upsert,
                ConversationRecord(
                    conversation_id=conversation_id,
                    owner_id=owner_id,
                    started_at=datetime.now(timezone.utc),
                ),
            )
        except PersistenceError:
            logger.exception("Error creating conversation %s", conversation_id)
            return False
        return True

    async def load(self, conversation_id: str, requester_id: uuid.UUID | None = None) -> List[Turn]:
        """Return a conversation's turns, repopulating the cache from the durable store on a miss.

        Raises ``NotFoundError`` when neither store knows the id and
        ``UnauthorizedError`` when the requester does not own it.
        """
        turns = await self.cache.get(conversation_id)
        if turns:
            if requester_id is not None:
                await self._check_owner(conversation_id, requester_id)
            return turns

        record = await run_in_threadpool(self.store.find_by_id, conversation_id, requester_id)
        if record is None:
            raise NotFoundError()
        if record.turns:
            await self.cache.put(conversation_id, record.turns)
        return record.turns

    async def _check_owner(self, conversation_id: str, requester_id: uuid.UUID) -> None:
        try:
            record = await run_in_threadpool(self.store.find_by_id, conversation_id)
        except PersistenceError:
            logger.exception("Ownership lookup failed for %s; serving cached history", conversation_id)
            return
        if record is not None:
            ensure_access(record, requester_id)
