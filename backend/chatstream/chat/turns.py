"""Conversation turns and the pure helpers that operate on turn sequences."""
from __future__ import annotations

import enum
import json
import logging
from typing import Any, Iterable, List, Sequence

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    """Closed set of speakers in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Turn(BaseModel):
    """One message in a conversation, tagged by role."""

    role: Role
    content: str

    model_config = {"frozen": True}

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Turn":
        return cls(role=Role.ASSISTANT, content=content)

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


def dump_turns(turns: Iterable[Turn]) -> List[dict[str, str]]:
    """Return the JSON-compatible list form stored in cache and database."""
    return [turn.as_dict() for turn in turns]


def load_turns(raw: Any) -> List[Turn]:
    """Parse the stored list form back into turns.

    Accepts either a JSON string or an already decoded list. Entries with an
    unknown role or missing content are dropped with a warning.
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, list):
        raise ValueError(f"Expected a list of turns, got {type(raw).__name__}")

    turns: List[Turn] = []
    for item in raw:
        try:
            turns.append(Turn.model_validate(item))
        except ValidationError:
            logger.warning("Dropping malformed turn: %r", item)
    return turns


def has_real_turns(turns: Sequence[Turn]) -> bool:
    """Return whether the sequence holds at least one user or assistant turn."""
    return any(turn.role is not Role.SYSTEM for turn in turns)


def with_system_turn(turns: Sequence[Turn], system_prompt: str) -> List[Turn]:
    """Return ``turns`` with a leading system turn, injecting one if absent."""
    if any(turn.role is Role.SYSTEM for turn in turns):
        return list(turns)
    return [Turn.system(system_prompt), *turns]


def is_duplicate_user_turn(turns: Sequence[Turn], content: str) -> bool:
    """Return whether ``content`` repeats the last turn, which is a user turn."""
    if not turns:
        return False
    last = turns[-1]
    return last.role is Role.USER and last.content == content


def trim_history(turns: Sequence[Turn], max_history: int) -> List[Turn]:
    """Drop the oldest non-system turns until at most ``max_history`` remain.

    The leading system turn, when present, is always kept and is not counted
    against ``max_history``.
    """
    system = next((turn for turn in turns if turn.role is Role.SYSTEM), None)
    others = [turn for turn in turns if turn.role is not Role.SYSTEM]
    if len(others) > max_history:
        others = others[len(others) - max_history:] if max_history > 0 else []
    return [system, *others] if system is not None else others


def first_user_preview(turns: Iterable[Turn], max_chars: int = 50) -> str:
    """Return a short preview built from the first non-blank user turn."""
    for turn in turns:
        if turn.role is not Role.USER:
            continue
        text = turn.content.strip()
        if not text:
            continue
        if len(text) > max_chars:
            return text[: max_chars - 3] + "..."
        return text
    return ""


def visible_turns(turns: Iterable[Turn]) -> List[Turn]:
    """Filter out system turns for display to the client."""
    return [turn for turn in turns if turn.role is not Role.SYSTEM]
