"""Grouped conversation listing for the history sidebar."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Dict, List

from fastapi.concurrency import run_in_threadpool

from .store import ConversationRecord, ConversationStore
from .turns import first_user_preview

logger = logging.getLogger(__name__)

TODAY = "Today"
PREVIOUS_7_DAYS = "Previous 7 Days"
PREVIOUS_30_DAYS = "Previous 30 Days"
GROUPS = (TODAY, PREVIOUS_7_DAYS, PREVIOUS_30_DAYS)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    id: str
    preview: str
    timestamp: datetime

    def as_dict(self) -> Dict[str, str]:
        return {"id": self.id, "preview": self.preview, "timestamp": self.timestamp.isoformat()}


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bucket_for(timestamp: datetime, now: datetime) -> str | None:
    """Return the group a timestamp falls into, measured from today's UTC midnight."""

    midnight = datetime.combine(_as_utc(now).date(), time.min, tzinfo=timezone.utc)
    timestamp = _as_utc(timestamp)
    if timestamp >= midnight:
        return TODAY
    if timestamp >= midnight - timedelta(days=7):
        return PREVIOUS_7_DAYS
    if timestamp >= midnight - timedelta(days=30):
        return PREVIOUS_30_DAYS
    return None


class HistoryQueryService:
    def __init__(self, store: ConversationStore, *, limit: int = 100, preview_chars: int = 50) -> None:
        self.store = store
        self.limit = limit
        self.preview_chars = preview_chars

    def _timestamp(self, record: ConversationRecord, active_id: str | None) -> datetime | None:
        if record.conversation_id == active_id and record.ended_at is None:
            return record.updated_at or record.started_at
        return record.ended_at or record.updated_at

    def group(
        self,
        records: List[ConversationRecord],
        *,
        active_id: str | None = None,
        now: datetime | None = None,
    ) -> Dict[str, List[HistoryEntry]]:
        now = now or datetime.now(timezone.utc)
        grouped: Dict[str, List[HistoryEntry]] = {name: [] for name in GROUPS}
        for record in records:
            preview = first_user_preview(record.turns, self.preview_chars)
            if not preview:
                continue
            timestamp = self._timestamp(record, active_id)
            if timestamp is None:
                continue
            bucket = bucket_for(timestamp, now)
            if bucket is None:
                continue
            grouped[bucket].append(HistoryEntry(record.conversation_id, preview, _as_utc(timestamp)))

        for entries in grouped.values():
            entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        return grouped

    async def list_for(
        self,
        owner_id: uuid.UUID | None,
        *,
        active_id: str | None = None,
        now: datetime | None = None,
    ) -> Dict[str, List[HistoryEntry]]:
        records = await run_in_threadpool(
            self.store.find_by_owner, owner_id, active_id=active_id, limit=self.limit
        )
        grouped = self.group(records, active_id=active_id, now=now)
        logger.debug(
            "History for %s: %s",
            owner_id or "anonymous",
            {name: len(entries) for name, entries in grouped.items()},
        )
        return grouped
