"""
store.py - Owner-scoped persistence facade for session snapshots.

Provides a consistent, high-level API for saving and resuming workflow sessions.
The workflow controller and routes use SessionStore - nothing else touches
SQLAlchemy directly.

Design principles:
  - One short transaction per call: a save either fully succeeds or fully fails
  - A save writes every column (full snapshot); there is no partial update
  - Every operation is scoped to the invoking owner; touching another owner's
    record raises Forbidden
  - SQLAlchemy errors are converted to PersistenceError here
  - Logs only snapshot_id / owner_id / step - never product input or chat text
  - Returns SessionSnapshot models (not ORM instances) so callers are persistence-agnostic
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricpilot.errors import Forbidden, NotFound, PersistenceError
from metricpilot.models.user_session import UserSessionORM
from metricpilot.workflow.schemas import SessionSnapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshot <-> row mapping
# ---------------------------------------------------------------------------

def _snapshot_columns(snapshot: SessionSnapshot) -> dict[str, Any]:
    """Every persisted column except id / owner / timestamps, JSON-ready."""
    return {
        "name": snapshot.name,
        "status": snapshot.status.value,
        "current_step": snapshot.current_step.value,
        "product_url": snapshot.product_url,
        "product_image_data": snapshot.product_image_data,
        "product_video_data": snapshot.product_video_data,
        "product_details": snapshot.product_details,
        "existing_metrics": [m.model_dump(mode="json") for m in snapshot.existing_metrics],
        "framework_answers": dict(snapshot.framework_answers),
        "selected_framework": snapshot.selected_framework.value if snapshot.selected_framework else None,
        "generated_metrics": [m.model_dump(mode="json") for m in snapshot.generated_metrics],
        "generated_events": [e.model_dump(mode="json") for e in snapshot.generated_events],
        "conversation_history": [t.model_dump(mode="json") for t in snapshot.conversation_history],
        "orchestration_session_id": snapshot.orchestration_session_id,
        "orchestration_status": snapshot.orchestration_status.value,
        "approval_type": snapshot.approval_type.value,
        "approval_required": snapshot.approval_required,
        "selected_metric_ids": list(snapshot.selected_metric_ids),
        "framework_recommendation": (
            snapshot.framework_recommendation.model_dump(mode="json")
            if snapshot.framework_recommendation else None
        ),
        "clarifying_questions": [q.model_dump(mode="json") for q in snapshot.clarifying_questions],
        "new_metric_ids": list(snapshot.new_metric_ids),
        "fallback_reason": snapshot.fallback_reason,
    }


def _row_to_snapshot(orm: UserSessionORM) -> SessionSnapshot:
    return SessionSnapshot.model_validate({
        "id": orm.id,
        "owner_id": orm.owner_id,
        "name": orm.name,
        "status": orm.status,
        "current_step": orm.current_step,
        "product_url": orm.product_url,
        "product_image_data": orm.product_image_data,
        "product_video_data": orm.product_video_data,
        "product_details": orm.product_details,
        "existing_metrics": orm.existing_metrics or [],
        "framework_answers": orm.framework_answers or {},
        "selected_framework": orm.selected_framework,
        "generated_metrics": orm.generated_metrics or [],
        "generated_events": orm.generated_events or [],
        "conversation_history": orm.conversation_history or [],
        "orchestration_session_id": orm.orchestration_session_id,
        "orchestration_status": orm.orchestration_status,
        "approval_type": orm.approval_type,
        "approval_required": orm.approval_required,
        "selected_metric_ids": orm.selected_metric_ids or [],
        "framework_recommendation": orm.framework_recommendation,
        "clarifying_questions": orm.clarifying_questions or [],
        "new_metric_ids": orm.new_metric_ids or [],
        "fallback_reason": orm.fallback_reason,
        "created_at": orm.created_at,
        "updated_at": orm.updated_at,
    })


def _check_owner(orm: UserSessionORM, owner_id: str) -> None:
    if orm.owner_id != owner_id:
        logger.warning("Ownership mismatch snapshot_id=%s owner_id=%s", orm.id, owner_id)
        raise Forbidden(f"Session {orm.id} belongs to another user")


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------

class SessionStore:
    """Durable, owner-scoped storage for SessionSnapshot records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(
        self,
        owner_id: str,
        snapshot: SessionSnapshot,
        snapshot_id: Optional[str] = None,
    ) -> str:
        """
        Create (snapshot_id=None) or fully overwrite a snapshot.

        Returns the snapshot id.
        Raises Forbidden if the snapshot or the stored record belongs to someone
        else, NotFound if snapshot_id does not exist, PersistenceError otherwise.
        """
        if snapshot.owner_id != owner_id:
            raise Forbidden("Snapshot owner does not match the invoking user")

        columns = _snapshot_columns(snapshot)
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    if snapshot_id is None:
                        orm = UserSessionORM(owner_id=owner_id, **columns)
                        db.add(orm)
                        await db.flush()
                    else:
                        orm = await db.get(UserSessionORM, snapshot_id)
                        if orm is None:
                            raise NotFound(f"Session {snapshot_id} not found")
                        _check_owner(orm, owner_id)
                        for key, value in columns.items():
                            setattr(orm, key, value)
                        orm.updated_at = datetime.now(timezone.utc)
                    saved_id = orm.id
        except SQLAlchemyError as exc:
            logger.error("Session save failed owner_id=%s: %s", owner_id, type(exc).__name__)
            raise PersistenceError("Failed to save session") from exc

        logger.info(
            "Saved session snapshot snapshot_id=%s owner_id=%s step=%s created=%s",
            saved_id, owner_id, snapshot.current_step.value, snapshot_id is None,
        )
        return saved_id

    async def load(self, owner_id: str, snapshot_id: str) -> SessionSnapshot:
        """Return the full snapshot. Raises NotFound / Forbidden / PersistenceError."""
        try:
            async with self._session_factory() as db:
                orm = await db.get(UserSessionORM, snapshot_id)
                if orm is None:
                    raise NotFound(f"Session {snapshot_id} not found")
                _check_owner(orm, owner_id)
                snapshot = _row_to_snapshot(orm)
        except SQLAlchemyError as exc:
            logger.error("Session load failed snapshot_id=%s: %s", snapshot_id, type(exc).__name__)
            raise PersistenceError("Failed to load session") from exc

        logger.info("Loaded session snapshot snapshot_id=%s owner_id=%s", snapshot_id, owner_id)
        return snapshot

    async def list(self, owner_id: str) -> list[SessionSnapshot]:
        """All snapshots of one owner, most recently updated first."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(UserSessionORM)
                    .where(UserSessionORM.owner_id == owner_id)
                    .order_by(UserSessionORM.updated_at.desc(), UserSessionORM.created_at.desc())
                )
                rows = result.scalars().all()
                snapshots = [_row_to_snapshot(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error("Session list failed owner_id=%s: %s", owner_id, type(exc).__name__)
            raise PersistenceError("Failed to list sessions") from exc
        return snapshots

    async def remove(self, owner_id: str, snapshot_id: str) -> None:
        """Delete a snapshot. A missing record is not an error."""
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    orm = await db.get(UserSessionORM, snapshot_id)
                    if orm is None:
                        logger.info("Session already absent snapshot_id=%s", snapshot_id)
                        return
                    _check_owner(orm, owner_id)
                    await db.delete(orm)
        except SQLAlchemyError as exc:
            logger.error("Session delete failed snapshot_id=%s: %s", snapshot_id, type(exc).__name__)
            raise PersistenceError("Failed to delete session") from exc
        logger.info("Deleted session snapshot snapshot_id=%s owner_id=%s", snapshot_id, owner_id)
