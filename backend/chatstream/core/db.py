"""Database utilities for SQLAlchemy."""
from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def _create_engine() -> Engine:
    """Create the SQLAlchemy engine using application settings."""

    return create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)


ENGINE: Engine = _create_engine()
SessionLocal = sessionmaker[
    Session
](bind=ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
