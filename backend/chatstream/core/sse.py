"""Server-sent event helpers for streaming responses."""
from __future__ import annotations

import json
from typing import Any, AsyncIterable, Dict

from fastapi.responses import StreamingResponse

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(data: Dict[str, Any]) -> str:
    """Return one ``data:`` frame carrying a JSON object."""
    return f"data: {json.dumps(data, default=str, ensure_ascii=False)}\n\n"


def stream(events: AsyncIterable[Dict[str, Any]]) -> StreamingResponse:
    """Create an SSE streaming response from an async iterable of JSON events."""

    async def iterator() -> AsyncIterable[bytes]:
        async for event in events:
            yield format_sse(event).encode("utf-8")

    return StreamingResponse(iterator(), headers=SSE_HEADERS, media_type="text/event-stream")
