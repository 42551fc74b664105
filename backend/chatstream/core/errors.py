"""Error taxonomy for the conversation engine and its HTTP mapping."""
from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base exception for conversation engine failures.

    ``message`` is safe to show to clients. ``error_code`` is the canonical
    short code used both for the HTTP status and for the client payload.
    """

    ERROR_CODE_TO_STATUS = {
        "invalid_input": 400,
        "forbidden": 403,
        "not_found": 404,
        "busy": 409,
        "persistence_error": 500,
        "upstream_error": 502,
    }

    error_code = "chat_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"success": False, "detail": self.message, "code": self.error_code}

    def http_status(self) -> int:
        return self.ERROR_CODE_TO_STATUS.get(self.error_code, 400)


class ValidationError(ChatError):
    """Raised when a user message is empty or missing."""

    error_code = "invalid_input"


class NotFoundError(ChatError):
    """Raised when a conversation is absent from both cache and durable store."""

    error_code = "not_found"

    def __init__(self, message: str = "Conversation not found") -> None:
        super().__init__(message)


class UnauthorizedError(ChatError):
    """Raised when a non-owner requests a conversation that has an owner."""

    error_code = "forbidden"

    def __init__(self, message: str = "Unauthorized access to conversation") -> None:
        super().__init__(message)


class ConversationBusyError(ChatError):
    """Raised when a conversation already has an active generation."""

    error_code = "busy"

    def __init__(self, conversation_id: str) -> None:
        super().__init__("A response is already being generated for this conversation")
        self.conversation_id = conversation_id


class UpstreamGenerationError(ChatError):
    """Raised when the generation backend fails before or during a stream."""

    error_code = "upstream_error"


class PersistenceError(ChatError):
    """Raised when a cache or durable store operation fails."""

    error_code = "persistence_error"


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Translate engine errors into structured JSON responses."""

    status_code = exc.http_status()
    if status_code >= 500:
        logger.warning("%s for %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.info("%s for %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_payload())


__all__ = [
    "ChatError",
    "ConversationBusyError",
    "NotFoundError",
    "PersistenceError",
    "UnauthorizedError",
    "UpstreamGenerationError",
    "ValidationError",
    "chat_error_handler",
]
