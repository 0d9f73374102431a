"""add_session_guidance

Revision ID: 002_add_session_guidance
Revises: 001_create_user_sessions
Create Date: 2026-10-18 00:00:00.000000 UTC

Adds the latest round's guidance to user_sessions so a resumed session shows
exactly what was on screen when it was saved: framework recommendation,
clarifying questions, newly generated metric ids and the fallback reason.

Existing rows get empty lists for the list columns; no data is rewritten.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002_add_session_guidance"
down_revision: Union[str, None] = "001_create_user_sessions"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.add_column(
        "user_sessions",
        sa.Column("framework_recommendation", JSON_DOCUMENT, nullable=True),
    )
    op.add_column(
        "user_sessions",
        sa.Column("clarifying_questions", JSON_DOCUMENT, nullable=False, server_default="[]"),
    )
    op.add_column(
        "user_sessions",
        sa.Column("new_metric_ids", JSON_DOCUMENT, nullable=False, server_default="[]"),
    )
    op.add_column(
        "user_sessions",
        sa.Column(
            "fallback_reason", sa.Text(), nullable=True,
            comment="Why the generation service fell back to default metrics",
        ),
    )


def downgrade() -> None:
    op.drop_column("user_sessions", "fallback_reason")
    op.drop_column("user_sessions", "new_metric_ids")
    op.drop_column("user_sessions", "clarifying_questions")
    op.drop_column("user_sessions", "framework_recommendation")
