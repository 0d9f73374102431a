"""
models/user_session.py - SQLAlchemy ORM model for saved workflow sessions.

Table: user_sessions
One row per saved session snapshot, owned by exactly one user.
Generated records and the conversation are JSON documents (JSONB on PostgreSQL);
scalar bookkeeping fields are separate columns for listing and ownership checks.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from metricpilot.database import Base, JSONDocument


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserSessionORM(Base):
    """
    ORM model for one saved workflow session.

    owner_id is indexed: every query is scoped to the invoking user.
    image / video frames are base64 data URLs - Text, never logged.
    """
    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID primary key - the snapshot id",
    )
    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Owning user reference - all reads/writes are scoped to it",
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="Untitled Session")
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="draft",
        comment="'draft' | 'in_progress' | 'completed' - mirrors SnapshotStatus",
    )
    current_step: Mapped[str] = mapped_column(String(16), nullable=False, default="input")

    # --- Input context ---
    product_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_image_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_video_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # --- Framework questions ---
    existing_metrics: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    framework_answers: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    selected_framework: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # --- Orchestration session ---
    generated_metrics: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    generated_events: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    conversation_history: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    orchestration_session_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Session id assigned by the generation service",
    )
    orchestration_status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    approval_type: Mapped[str] = mapped_column(String(10), nullable=False, default="none")
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    selected_metric_ids: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)

    # --- Latest round's guidance (added in 002) ---
    framework_recommendation: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)
    clarifying_questions: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    new_metric_ids: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    fallback_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Why the generation service fell back to default metrics",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        index=True,
    )
