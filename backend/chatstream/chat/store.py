"""Durable conversation records backed by SQLAlchemy."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List

from sqlalchemy import Select, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import PersistenceError, UnauthorizedError
from ..core.metrics import record_persistence_failure
from ..models import Conversation
from .turns import Turn, dump_turns, load_turns

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ConversationRecord:
    """Detached view of one durable conversation row."""

    conversation_id: str
    owner_id: uuid.UUID | None = None
    turns: List[Turn] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    updated_at: datetime | None = None
    temporary: bool = False

    @classmethod
    def from_row(cls, row: Conversation) -> "ConversationRecord":
        return cls(
            conversation_id=row.conversation_id,
            owner_id=row.user_id,
            turns=load_turns(row.chat_history or []),
            started_at=row.started_at,
            ended_at=row.ended_at,
            updated_at=row.updated_at,
            temporary=bool(row.is_temporary),
        )


def ensure_access(record: ConversationRecord, requester_id: uuid.UUID | None) -> None:
    """Raise ``UnauthorizedError`` when a known requester does not own the record."""

    if record.owner_id is not None and requester_id is not None and record.owner_id != requester_id:
        raise UnauthorizedError()


class ConversationStore:
    """Repository for durable conversation records.

    Conversations are append-only from the caller's perspective: rows are
    created and updated but only removed through an owner deletion cascade.
    All methods are blocking; async callers dispatch them to a thread pool.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def upsert(self, record: ConversationRecord) -> ConversationRecord:
        if record.temporary:
            raise ValueError(f"Temporary conversation {record.conversation_id} cannot be persisted")

        now = datetime.now(timezone.utc)
        try:
            with self.session_factory() as session:
                row = session.get(Conversation, record.conversation_id)
                if row is None:
                    row = Conversation(
                        conversation_id=record.conversation_id,
                        user_id=record.owner_id,
                        started_at=record.started_at or now,
                        is_temporary=False,
                    )
                    session.add(row)
                elif row.user_id is None and record.owner_id is not None:
                    row.user_id = record.owner_id
                row.chat_history = dump_turns(record.turns)
                if record.ended_at is not None:
                    row.ended_at = record.ended_at
                row.updated_at = now
                session.commit()
                return ConversationRecord.from_row(row)
        except SQLAlchemyError as exc:
            record_persistence_failure("durable", "upsert")
            raise PersistenceError(f"Failed to persist conversation {record.conversation_id}") from exc

    def find_by_id(
        self, conversation_id: str, requester_id: uuid.UUID | None = None
    ) -> ConversationRecord | None:
        try:
            with self.session_factory() as session:
                row = session.get(Conversation, conversation_id)
                record = ConversationRecord.from_row(row) if row is not None else None
        except SQLAlchemyError as exc:
            record_persistence_failure("durable", "find_by_id")
            raise PersistenceError(f"Failed to load conversation {conversation_id}") from exc

        if record is not None:
            ensure_access(record, requester_id)
        return record

    def exists(self, conversation_id: str) -> bool:
        try:
            with self.session_factory() as session:
                stmt = select(Conversation.conversation_id).where(
                    Conversation.conversation_id == conversation_id
                )
                return session.execute(stmt).scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            record_persistence_failure("durable", "exists")
            raise PersistenceError(f"Failed to look up conversation {conversation_id}") from exc

    def find_by_owner(
        self,
        owner_id: uuid.UUID | None,
        *,
        active_id: str | None = None,
        limit: int = 100,
    ) -> List[ConversationRecord]:
        """Return ended (or currently active) conversations of one owner, newest first.

        ``owner_id=None`` selects anonymous conversations.
        """
        owner_clause = Conversation.user_id.is_(None) if owner_id is None else Conversation.user_id == owner_id
        visible = [Conversation.ended_at.is_not(None)]
        if active_id:
            visible.append(Conversation.conversation_id == active_id)

        stmt: Select[Any] = (
            select(Conversation)
            .where(
                Conversation.is_temporary.is_(False),
                owner_clause,
                or_(*visible),
            )
            .order_by(Conversation.updated_at.desc(), Conversation.ended_at.desc())
            .limit(limit)
        )
        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                return [ConversationRecord.from_row(row) for row in rows]
        except SQLAlchemyError as exc:
            record_persistence_failure("durable", "find_by_owner")
            raise PersistenceError("Failed to list conversations") from exc

    def delete_for_owner(self, owner_id: uuid.UUID) -> int:
        """Remove every conversation of an owner as part of account deletion."""
        try:
            with self.session_factory() as session:
                result = session.execute(delete(Conversation).where(Conversation.user_id == owner_id))
                session.commit()
                removed = result.rowcount or 0
        except SQLAlchemyError as exc:
            record_persistence_failure("durable", "delete_for_owner")
            raise PersistenceError(f"Failed to delete conversations of owner {owner_id}") from exc
        logger.info("Deleted %d conversations for owner %s", removed, owner_id)
        return removed
