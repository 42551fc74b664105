"""Custom ASGI middleware for session identity, CSRF protection and request logging."""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Mapping

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .metrics import record_request

SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
CSRF_HEADER = "X-CSRF-Token"
TIMING_HEADER = "X-Response-Time-Ms"

request_logger = logging.getLogger("chatstream.request")


class SessionIdentityMiddleware(BaseHTTPMiddleware):
    """Expose the session owner on ``request.state`` and guard authenticated mutations.

    Anonymous sessions are allowed through; they simply carry ``user_id=None``.
    """

    def __init__(self, app: Callable, api_prefix: str = "/api") -> None:
        super().__init__(app)
        self.api_prefix = api_prefix

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if not request.url.path.startswith(self.api_prefix):
            return await call_next(request)

        user_id = request.session.get("user_id")
        request.state.user_id = user_id
        needs_token = user_id and request.method not in SAFE_METHODS and _is_json_request(request)
        if needs_token and not _csrf_token_matches(request.session, request.headers.get(CSRF_HEADER)):
            return JSONResponse(
                {"success": False, "detail": "Invalid CSRF token"},
                status_code=status.HTTP_403_FORBIDDEN,
            )
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one metrics sample per request, tagged with the session's conversation.

    For SSE responses the timing covers the time until headers are sent, not
    the length of the stream.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _observe(request, status.HTTP_500_INTERNAL_SERVER_ERROR, started, streaming=False)
            request_logger.exception("Unhandled error on %s %s", request.method, _route_path(request))
            raise

        streaming = response.headers.get("content-type", "").startswith("text/event-stream")
        elapsed = _observe(request, response.status_code, started, streaming=streaming)
        response.headers.setdefault(TIMING_HEADER, f"{elapsed * 1000:.1f}")
        return response


def _observe(request: Request, status_code: int, started: float, *, streaming: bool) -> float:
    elapsed = time.perf_counter() - started
    path = _route_path(request)
    bag: Mapping[str, Any] = request.session if "session" in request.scope else {}
    record_request(request.method, path, status_code, elapsed)
    request_logger.info(
        "%s %s -> %s%s conversation=%s user=%s (%.1f ms)",
        request.method,
        path,
        status_code,
        " [stream]" if streaming else "",
        bag.get("conversation_id") or "-",
        bag.get("user_id") or "anonymous",
        elapsed * 1000,
    )
    return elapsed


def _route_path(request: Request) -> str:
    # Route templates keep metric labels bounded; ids in the raw path would not.
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def _csrf_token_matches(session: Mapping[str, Any], header_token: str | None) -> bool:
    expected = session.get("csrf_token")
    return bool(expected) and header_token == expected


def _is_json_request(request: Request) -> bool:
    content_type = request.headers.get("content-type") or ""
    return "application/json" in content_type.lower()
