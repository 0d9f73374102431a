"""
models/__init__.py - imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from metricpilot.models.user_session import UserSessionORM

__all__ = ["UserSessionORM"]
