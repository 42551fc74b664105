"""Streaming text generation against an Ollama-compatible chat endpoint."""
from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Literal, Protocol, Sequence

import httpx

from ..core.config import settings
from ..core.errors import UpstreamGenerationError
from .turns import Turn, dump_turns

logger = logging.getLogger(__name__)

EventType = Literal["delta", "end", "error"]


@dataclass(frozen=True, slots=True)
class GenerationEvent:
    """One event of a generation stream."""

    type: EventType
    text: str = ""
    detail: str | None = None

    @classmethod
    def delta(cls, text: str) -> "GenerationEvent":
        return cls(type="delta", text=text)

    @classmethod
    def end(cls) -> "GenerationEvent":
        return cls(type="end")

    @classmethod
    def error(cls, detail: str) -> "GenerationEvent":
        return cls(type="error", detail=detail)


class GenerationClient(Protocol):
    """Protocol implemented by streaming generation backends."""

    def stream(
        self,
        turns: Sequence[Turn],
        *,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[GenerationEvent]:
        """Yield ordered delta events terminated by an end or error event.

        May raise ``UpstreamGenerationError`` before the first event.
        """


def parse_chunk(chunk: Dict[str, Any]) -> list[GenerationEvent]:
    """Translate one decoded Ollama ``/api/chat`` line into generation events."""

    if chunk.get("error"):
        return [GenerationEvent.error(str(chunk["error"]))]

    events: list[GenerationEvent] = []
    message = chunk.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if content:
        events.append(GenerationEvent.delta(content))
    if chunk.get("done"):
        events.append(GenerationEvent.end())
    return events


class OllamaChatClient:
    """Generation collaborator speaking the Ollama chat streaming protocol."""

    def __init__(
        self,
        host: str | None = None,
        *,
        model: str | None = None,
        fallback_host: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = host or settings.GENERATION_HOST
        self.model = model or settings.GENERATION_MODEL
        self.fallback_host = fallback_host if fallback_host is not None else settings.GENERATION_FALLBACK_HOST
        self.timeout = timeout or settings.GENERATION_TIMEOUT
        self.transport = transport

    def _payload(self, turns: Sequence[Turn], max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": dump_turns(turns),
            "stream": True,
            "options": {"num_predict": max_tokens, "temperature": temperature},
        }

    async def _stream_from_host(self, host: str, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        async with httpx.AsyncClient(base_url=host, timeout=self.timeout, transport=self.transport) as client:
            async with client.stream("POST", "/api/chat", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping undecodable generation line: %r", line[:200])
                        continue
                    yield data

    async def stream(
        self,
        turns: Sequence[Turn],
        *,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[GenerationEvent]:
        payload = self._payload(turns, max_tokens, temperature)
        hosts = [self.host]
        if self.fallback_host and self.fallback_host != self.host:
            hosts.append(self.fallback_host)

        last_error: Exception | None = None
        for host in hosts:
            started = False
            try:
                async with aclosing(self._stream_from_host(host, payload)) as chunks:
                    async for chunk in chunks:
                        for event in parse_chunk(chunk):
                            started = True
                            yield event
                            if event.type != "delta":
                                return
                return
            except httpx.TransportError as exc:
                if started:
                    raise UpstreamGenerationError("Generation stream interrupted") from exc
                logger.warning("Generation host %s unreachable (%s)", host, exc)
                last_error = exc
            except httpx.HTTPStatusError as exc:
                logger.error("Generation host %s answered %s", host, exc.response.status_code)
                raise UpstreamGenerationError("Generation backend rejected the request") from exc

        raise UpstreamGenerationError("Generation backend unavailable") from last_error
