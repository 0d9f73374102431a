"""
database.py - SQLAlchemy 2.0 async engine and session factory.

This module owns ALL database connection infrastructure.
Nothing else in the codebase creates engines or sessions directly.

Usage (SessionStore opens its own short transaction per call):
    from metricpilot.database import AsyncSessionLocal
    store = SessionStore(AsyncSessionLocal)
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from metricpilot.config import settings


# ---------------------------------------------------------------------------
# Declarative base - ALL ORM models inherit from this
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base.
    All ORM models in metricpilot/models/ inherit from Base.
    Defined here (not in models/) to prevent circular imports in alembic/env.py.
    """
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _engine_options(url: str) -> dict:
    """Pool options only apply to server databases; SQLite uses its own pool."""
    if url.startswith("sqlite"):
        return {"echo": settings.debug}
    return {
        "echo": settings.debug,      # Logs SQL statements in debug mode
        "pool_size": 5,              # Core connection pool size
        "max_overflow": 10,          # Extra connections under peak load
        "pool_pre_ping": True,       # Detect and discard stale connections before each use
    }


# ---------------------------------------------------------------------------
# Async engine - one per application lifetime
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    **_engine_options(settings.database_url),
)

# ---------------------------------------------------------------------------
# Session factory - produces AsyncSession instances
# ---------------------------------------------------------------------------
AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,   # Keep objects usable after commit without re-querying
)
