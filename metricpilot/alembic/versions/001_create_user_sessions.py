"""create_user_sessions

Revision ID: 001_create_user_sessions
Revises:
Create Date: 2026-10-18 00:00:00.000000 UTC

Creates the user_sessions table for saved workflow snapshots.
One row per saved session, owned by exactly one user. Indexed by owner_id for
owner-scoped queries and by updated_at for most-recent-first listing.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_create_user_sessions"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "user_sessions",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID primary key - the snapshot id"),
        sa.Column(
            "owner_id", sa.String(64), nullable=False,
            comment="Owning user reference - all reads/writes are scoped to it",
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column(
            "status", sa.String(16), nullable=False,
            comment="'draft' | 'in_progress' | 'completed' - mirrors SnapshotStatus",
        ),
        sa.Column("current_step", sa.String(16), nullable=False),
        sa.Column("product_url", sa.Text(), nullable=True),
        sa.Column("product_image_data", sa.Text(), nullable=True),
        sa.Column("product_video_data", sa.Text(), nullable=True),
        sa.Column("product_details", sa.Text(), nullable=True),
        sa.Column("existing_metrics", JSON_DOCUMENT, nullable=False),
        sa.Column("framework_answers", JSON_DOCUMENT, nullable=False),
        sa.Column("selected_framework", sa.String(32), nullable=True),
        sa.Column("generated_metrics", JSON_DOCUMENT, nullable=False),
        sa.Column("generated_events", JSON_DOCUMENT, nullable=False),
        sa.Column("conversation_history", JSON_DOCUMENT, nullable=False),
        sa.Column(
            "orchestration_session_id", sa.String(100), nullable=True,
            comment="Session id assigned by the generation service",
        ),
        sa.Column("orchestration_status", sa.String(20), nullable=False),
        sa.Column("approval_type", sa.String(10), nullable=False),
        sa.Column("approval_required", sa.Boolean(), nullable=False),
        sa.Column("selected_metric_ids", JSON_DOCUMENT, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_user_sessions_owner_id",
        "user_sessions",
        ["owner_id"],
        unique=False,
    )
    op.create_index(
        "ix_user_sessions_updated_at",
        "user_sessions",
        ["updated_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_user_sessions_updated_at", table_name="user_sessions")
    op.drop_index("ix_user_sessions_owner_id", table_name="user_sessions")
    op.drop_table("user_sessions")
