from __future__ import annotations

import json

import httpx
import pytest

from backend.chatstream.chat.generation import GenerationEvent, OllamaChatClient, parse_chunk
from backend.chatstream.chat.turns import Turn
from backend.chatstream.core.errors import UpstreamGenerationError

TURNS = [Turn.system("sys"), Turn.user("Hello")]


def _ndjson(*chunks: dict) -> bytes:
    return "\n".join(json.dumps(chunk) for chunk in chunks).encode("utf-8")


async def _collect(client: OllamaChatClient) -> list[GenerationEvent]:
    return [event async for event in client.stream(TURNS, max_tokens=32, temperature=0.1)]


def test_parse_chunk_maps_ollama_fields() -> None:
    assert parse_chunk({"message": {"role": "assistant", "content": "Hi"}, "done": False}) == [
        GenerationEvent.delta("Hi")
    ]
    assert parse_chunk({"message": {"role": "assistant", "content": ""}, "done": True}) == [GenerationEvent.end()]
    assert parse_chunk({"error": "model not found"}) == [GenerationEvent.error("model not found")]


@pytest.mark.asyncio
async def test_stream_posts_chat_payload_and_yields_deltas() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/api/chat"
        return httpx.Response(
            200,
            content=_ndjson(
                {"message": {"content": "Hi"}, "done": False},
                {"message": {"content": " there"}, "done": False},
                {"message": {"content": ""}, "done": True},
            ),
        )

    client = OllamaChatClient(
        "http://primary:11434", model="llama3.1", fallback_host="", transport=httpx.MockTransport(handler)
    )

    events = await _collect(client)

    assert events == [GenerationEvent.delta("Hi"), GenerationEvent.delta(" there"), GenerationEvent.end()]
    assert seen[0]["model"] == "llama3.1"
    assert seen[0]["stream"] is True
    assert seen[0]["messages"][1] == {"role": "user", "content": "Hello"}
    assert seen[0]["options"] == {"num_predict": 32, "temperature": 0.1}


@pytest.mark.asyncio
async def test_unreachable_primary_falls_back_before_first_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "primary":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=_ndjson({"message": {"content": "ok"}, "done": True}))

    client = OllamaChatClient(
        "http://primary:11434",
        fallback_host="http://fallback:11434",
        transport=httpx.MockTransport(handler),
    )

    assert await _collect(client) == [GenerationEvent.delta("ok"), GenerationEvent.end()]


@pytest.mark.asyncio
async def test_all_hosts_down_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = OllamaChatClient("http://primary:11434", fallback_host="", transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamGenerationError, match="unavailable"):
        await _collect(client)


@pytest.mark.asyncio
async def test_rejected_request_is_not_retried() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return httpx.Response(500, content=b"boom")

    client = OllamaChatClient(
        "http://primary:11434",
        fallback_host="http://fallback:11434",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(UpstreamGenerationError, match="rejected"):
        await _collect(client)
    assert calls == ["primary"]
