"""FastAPI application entry point for the conversation streaming engine."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from .api import routes_admin, routes_chat
from .chat.services import ChatServices, build_chat_services
from .core.config import settings
from .core.errors import ChatError, chat_error_handler
from .core.middleware import RequestLoggingMiddleware, SessionIdentityMiddleware
from .core.rate_limiter import limiter, rate_limit_handler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services: ChatServices = app.state.chat_services
    await services.cache.purge_stale_versions()
    yield
    await services.orchestrator.wait_idle()
    logger.info("Chat services stopped")


def create_app(services: ChatServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``services`` replaces the default wiring, which tests use to inject
    in-memory stores and a scripted generator.
    """
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.chat_services = services or build_chat_services(settings)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(ChatError, chat_error_handler)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(SessionIdentityMiddleware, api_prefix="/api")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL.rstrip("/")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.SESSION_COOKIE_NAME,
        same_site="lax",
        https_only=settings.SESSION_COOKIE_SECURE,
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
    app.include_router(routes_chat.router, prefix="/api/chat", tags=["chat"])

    return app


app = create_app()
