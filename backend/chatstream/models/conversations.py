"""Conversation persistence model."""
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, false, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from . import Base


class Conversation(Base):
    """Durable record of one non-temporary conversation.

    The full turn sequence is stored denormalized in ``chat_history`` as a
    list of ``{"role": ..., "content": ...}`` objects.
    """

    __tablename__ = "conversations"

    conversation_id = Column(String, primary_key=True)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    chat_history = Column(JSONB, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True, index=True)
    is_temporary = Column(Boolean, nullable=False, default=False, server_default=false())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="conversations")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"Conversation(conversation_id={self.conversation_id!r}, user_id={self.user_id!s})"
