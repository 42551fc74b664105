"""Application configuration powered by Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_PROMPT = (
    "Write naturally, using formatting only when it genuinely enhances content clarity or readability. "
    "Use headers for titles of articles, essays or documents, code blocks only for actual code, "
    "and lists only for sequential steps or truly itemized content. "
    "When in doubt about formatting, prefer plain text and valid Markdown."
)


class Settings(BaseSettings):
    """Global application settings loaded from environment variables."""

    PROJECT_NAME: str = Field(default="Conversation Streaming Engine")
    VERSION: str = Field(default="0.1.0")

    DATABASE_URL: str = Field(default="postgresql+psycopg://postgres:postgres@db:5432/postgres")
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    CACHE_VERSION: str = Field(default="1.0.0")
    CACHE_TTL: int = Field(default=3600)

    CHAT_MAX_HISTORY: int = Field(default=10)
    SYSTEM_PROMPT: str = Field(default=DEFAULT_SYSTEM_PROMPT)

    GENERATION_HOST: str = Field(default="http://host.docker.internal:11434")
    GENERATION_FALLBACK_HOST: str | None = Field(default=None)
    GENERATION_MODEL: str = Field(default="llama3.1")
    GENERATION_MAX_TOKENS: int = Field(default=2048)
    GENERATION_TEMPERATURE: float = Field(default=0.7)
    GENERATION_TIMEOUT: float = Field(default=120.0)
    GENERATION_IDLE_TIMEOUT: float | None = Field(default=None)

    HISTORY_LIST_LIMIT: int = Field(default=100)
    HISTORY_PREVIEW_CHARS: int = Field(default=50)

    FRONTEND_URL: str = Field(default="http://localhost:3000")

    SESSION_SECRET: str = Field(default="change-me")
    SESSION_COOKIE_NAME: str = Field(default="chat_session")
    SESSION_COOKIE_SECURE: bool = Field(default=False)

    RATE_LIMIT_CHAT_MESSAGE: str = Field(default="60/minute")
    RATE_LIMIT_CHAT_STREAM: str = Field(default="30/minute")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> Settings:
    """Return cached settings instance to avoid repeated parsing."""

    if overrides:
        return Settings(**overrides)
    return Settings()


settings = get_settings()
