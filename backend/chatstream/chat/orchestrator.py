"""Streaming orchestration of one model generation per request.

Each accepted request gets a producer task that pulls deltas from the
generation backend and pushes them, in arrival order, onto a
``ClientChannel``. The HTTP response consumes the channel. Closing the
channel before the terminal event cancels the producer, which in turn
closes the upstream subscription and keeps whatever text had arrived.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Sequence

from ..core.errors import ConversationBusyError, UpstreamGenerationError, ValidationError
from ..core.metrics import record_stream_result
from .coordinator import ConversationContext, HistoryCoordinator
from .generation import GenerationClient, GenerationEvent
from .turns import Role, Turn, with_system_turn

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


class StreamState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"


class ClientChannel:
    """Single-producer, single-consumer queue of JSON events bound for one client."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Dict[str, Any] | None] = asyncio.Queue()
        self._closed = False
        self._finished = False
        self._on_close: Callable[[], None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    def on_close(self, callback: Callable[[], None]) -> None:
        self._on_close = callback

    def push(self, event: Dict[str, Any]) -> bool:
        if self._closed or self._finished:
            return False
        self._queue.put_nowait(event)
        return True

    def finish(self, event: Dict[str, Any]) -> bool:
        """Push the terminal event; later closes no longer cancel the producer."""
        if not self.push(event):
            return False
        self._finished = True
        self._queue.put_nowait(None)
        return True

    def close(self) -> None:
        """Mark the client as gone. Synchronously signals the producer when still running."""
        if self._closed:
            return
        self._closed = True
        if not self._finished and self._on_close is not None:
            self._on_close()

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class StreamRun:
    """One in-flight generation: its context, prompt, channel and producer task."""

    def __init__(self, context: ConversationContext, turns: List[Turn]) -> None:
        self.context = context
        self.turns = turns
        self.channel = ClientChannel()
        self.parts: List[str] = []
        self.task: asyncio.Task[None] | None = None

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield client events; once the terminal event is out, wait for the hand-off."""
        try:
            async for event in self.channel.events():
                yield event
            if self.task is not None:
                # wait() neither raises for a cancelled producer nor cancels it when we are.
                await asyncio.wait({self.task})
        finally:
            self.channel.close()


class StreamOrchestrator:
    """Drives generations and enforces one active stream per conversation."""

    def __init__(
        self,
        generator: GenerationClient,
        coordinator: HistoryCoordinator,
        *,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
        idle_timeout: float | None = None,
    ) -> None:
        self.generator = generator
        self.coordinator = coordinator
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.idle_timeout = idle_timeout
        self._active: Dict[str, StreamRun] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def state(self, conversation_id: str) -> StreamState:
        return StreamState.STREAMING if conversation_id in self._active else StreamState.IDLE

    def is_streaming(self, conversation_id: str) -> bool:
        return self.state(conversation_id) is StreamState.STREAMING

    def _acquire(self, run: StreamRun) -> None:
        # Check-and-set without an await in between, so it is atomic on the event loop.
        conversation_id = run.context.conversation_id
        if conversation_id in self._active:
            record_stream_result("rejected")
            raise ConversationBusyError(conversation_id)
        self._active[conversation_id] = run

    def _release(self, run: StreamRun) -> None:
        conversation_id = run.context.conversation_id
        if self._active.get(conversation_id) is run:
            del self._active[conversation_id]

    def open(self, context: ConversationContext, turns: Sequence[Turn]) -> StreamRun:
        """Start generating for ``context`` and return the run whose events feed the client."""

        if not any(turn.role is Role.USER for turn in turns):
            raise ValidationError("No user message found")

        run = StreamRun(context, with_system_turn(turns, self.system_prompt))
        self._acquire(run)
        run.channel.on_close(run.cancel)
        run.task = asyncio.create_task(self._drive(run), name=f"stream:{context.conversation_id}")
        self._tasks.add(run.task)
        run.task.add_done_callback(self._tasks.discard)
        # Covers a task cancelled before its first step, whose body never runs.
        run.task.add_done_callback(lambda _task: self._release(run))
        logger.info(
            "Streaming conversation %s with %d turns", context.conversation_id, len(run.turns)
        )
        return run

    async def stop(self, conversation_id: str, reason: str = "Conversation was reset") -> None:
        """End the active stream of a conversation and wait until its history writes are done.

        A run that already sent its terminal event is only awaited. Otherwise
        the client gets ``{"error": reason}`` and the producer is cancelled,
        which keeps the partial text as the assistant turn.
        """
        run = self._active.get(conversation_id)
        if run is None or run.task is None:
            return
        if not run.channel.finished:
            logger.info("Stopping stream for conversation %s: %s", conversation_id, reason)
            run.channel.finish({"error": reason})
            run.cancel()
        await asyncio.wait({run.task})

    async def wait_idle(self) -> None:
        """Wait for every producer task to finish (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _next_event(self, upstream: AsyncIterator[GenerationEvent]) -> GenerationEvent | None:
        try:
            if self.idle_timeout:
                return await asyncio.wait_for(anext(upstream), self.idle_timeout)
            return await anext(upstream)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError as exc:
            raise UpstreamGenerationError("Generation timed out") from exc

    async def _drive(self, run: StreamRun) -> None:
        ctx = run.context
        channel = run.channel
        outcome = "failed"
        handed_off = False
        upstream = self.generator.stream(
            run.turns, max_tokens=self.max_tokens, temperature=self.temperature
        )
        try:
            try:
                while True:
                    event = await self._next_event(upstream)
                    if event is None or event.type == "end":
                        break
                    if event.type == "error":
                        raise UpstreamGenerationError(event.detail or "Generation failed")
                    if event.text:
                        run.parts.append(event.text)
                        channel.push({"content": event.text})
            except UpstreamGenerationError as exc:
                logger.warning("Generation failed for %s: %s", ctx.conversation_id, exc.message)
                channel.finish({"error": exc.message})
                return
            except Exception:
                logger.exception("Unexpected generation failure for %s", ctx.conversation_id)
                channel.finish({"error": "Stream processing error"})
                return

            await _close_upstream(upstream)
            text = run.text
            channel.finish({"content": DONE_MARKER, "fullResponse": text, "completed": True})
            handed_off = True
            await self.coordinator.append_assistant_turn(ctx, text)
            outcome = "completed"
        except asyncio.CancelledError:
            outcome = "cancelled"
            # No-op when the client already left; unblocks a reader still attached.
            channel.finish({"error": "Stream cancelled"})
            await _close_upstream(upstream)
            if not handed_off and run.text:
                logger.info(
                    "Client left conversation %s mid-stream; keeping %d partial characters",
                    ctx.conversation_id,
                    len(run.text),
                )
                await self.coordinator.append_assistant_turn(ctx, run.text)
            raise
        finally:
            await _close_upstream(upstream)
            self._release(run)
            record_stream_result(outcome)


async def _close_upstream(upstream: AsyncIterator[GenerationEvent]) -> None:
    aclose = getattr(upstream, "aclose", None)
    if aclose is not None:
        await aclose()
