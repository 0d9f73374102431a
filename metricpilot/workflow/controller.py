"""
controller.py - WorkflowController, the five-step user workflow.

Sequences the user-facing steps on top of one OrchestrationEngine and the
SessionStore:

    input --start_analysis--> clarify --complete_questions--> visualize
          --approve_metrics--> review --approve_taxonomy--> results

restart() (and reject()) take any step back to input: the engine is reset and
the current snapshot id is discarded, never deleted.

The controller owns the engine and is the only caller of its actions. It holds
a busy flag so that at most one generation call is pending per workflow;
across HTTP requests the same rule is enforced by the Redis lock in cache.py.
After every successful state-changing call it autosaves, but only when the
workflow already has a snapshot id (the user saved it once).
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Mapping, Optional, Sequence

from metricpilot.errors import BusyError, PersistenceError, ValidationError
from metricpilot.orchestration.engine import OrchestrationEngine, SupportsGeneration
from metricpilot.orchestration.schemas import (
    ApprovalType,
    CustomField,
    ExistingMetric,
    FrameworkType,
    InputContext,
    OrchestrationStatus,
)
from metricpilot.store import SessionStore
from metricpilot.workflow.schemas import (
    DEFAULT_SESSION_NAME,
    SessionSnapshot,
    WorkflowState,
    WorkflowStep,
    WorkflowView,
    snapshot_status_for,
)

logger = logging.getLogger(__name__)

NOT_SPECIFIED = "Not specified"

# Framework question ids, in the order they appear in the User Context block
_CONTEXT_LINES = (
    ("primary_goal", "Primary Goal"),
    ("product_stage", "Product Stage"),
    ("business_model", "Business Model"),
    ("key_actions", "Key Actions"),
    ("north_star_focus", "North Star Focus"),
)


def enrich_product_details(
    details: Optional[str],
    answers: Mapping[str, str],
    framework: FrameworkType,
) -> str:
    """
    Append the framework-question answers to the free-text product details.

    The "User Context:" block lists every question in a fixed order; a missing
    or blank answer reads "Not specified". With no details the block stands alone.
    """
    lines = ["User Context:"]
    for key, label in _CONTEXT_LINES:
        value = (answers.get(key) or "").strip() or NOT_SPECIFIED
        lines.append(f"- {label}: {value}")
    lines.append(f"- Preferred Framework: {framework.value}")
    block = "\n".join(lines)
    if details and details.strip():
        return f"{details}\n\n{block}"
    return block


class WorkflowController:
    """One user's active workflow: step, bookkeeping, engine and store."""

    def __init__(
        self,
        client: SupportsGeneration,
        store: SessionStore,
        owner_id: str,
        workflow_id: Optional[str] = None,
        state: Optional[WorkflowState] = None,
    ) -> None:
        self._client = client
        self.store = store
        self._busy = False

        state = state or WorkflowState(
            workflow_id=workflow_id or str(uuid.uuid4()),
            owner_id=owner_id,
            created_at=datetime.now(timezone.utc),
        )
        if state.owner_id != owner_id:
            raise ValueError("WorkflowState belongs to another owner")

        self.workflow_id = state.workflow_id
        self.owner_id = state.owner_id
        self.step = state.step
        self.snapshot_id = state.snapshot_id
        self.name = state.name
        self.pending_input = state.pending_input
        self.framework_answers = dict(state.framework_answers)
        self.selected_framework = state.selected_framework
        self.existing_metrics = list(state.existing_metrics)
        self.created_at = state.created_at
        self.engine = OrchestrationEngine.from_state(client, state.session)

    @classmethod
    def from_state(
        cls,
        state: WorkflowState,
        client: SupportsGeneration,
        store: SessionStore,
    ) -> "WorkflowController":
        return cls(client, store, state.owner_id, state=state)

    def dump_state(self) -> WorkflowState:
        return WorkflowState(
            workflow_id=self.workflow_id,
            owner_id=self.owner_id,
            step=self.step,
            snapshot_id=self.snapshot_id,
            name=self.name,
            pending_input=self.pending_input,
            framework_answers=dict(self.framework_answers),
            selected_framework=self.selected_framework,
            existing_metrics=list(self.existing_metrics),
            created_at=self.created_at,
            session=self.engine.state(),
        )

    def view(self) -> WorkflowView:
        return WorkflowView(
            workflow_id=self.workflow_id,
            step=self.step,
            snapshot_id=self.snapshot_id,
            name=self.name,
            framework_answers=dict(self.framework_answers),
            selected_framework=self.selected_framework,
            existing_metrics=list(self.existing_metrics),
            session=self.engine.state(),
        )

    @property
    def busy(self) -> bool:
        return self._busy

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if self._busy:
            raise BusyError()
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    def _require_step(self, *steps: WorkflowStep) -> None:
        if self.step not in steps:
            allowed = ", ".join(s.value for s in steps)
            raise ValidationError(
                "InvalidStep",
                f"Action not available on step '{self.step.value}' (expected: {allowed})",
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def start_analysis(self, input_context: InputContext, name: Optional[str] = None) -> None:
        """Record the product input and move on to the framework questions."""
        self._require_step(WorkflowStep.input)
        if input_context.is_empty:
            raise ValidationError("MissingInput", "Provide a URL, image, video frame or product details")

        self.pending_input = input_context
        if name:
            self.name = name
        self.step = WorkflowStep.clarify
        logger.info("Analysis started workflow_id=%s", self.workflow_id)
        await self.autosave()

    async def complete_questions(
        self,
        answers: Mapping[str, str],
        framework: FrameworkType = FrameworkType.driver_tree,
    ) -> None:
        """Store the answers, start the orchestration session and move to visualize."""
        self._require_step(WorkflowStep.clarify)
        if self.pending_input is None:
            raise ValidationError("MissingInput", "No product input recorded; restart the workflow")

        with self._exclusive():
            self.framework_answers = dict(answers)
            self.selected_framework = framework
            enriched = self.pending_input.model_copy(
                update={
                    "product_details": enrich_product_details(
                        self.pending_input.product_details, answers, framework,
                    ),
                },
            )
            await self.engine.start(enriched)

        self.step = WorkflowStep.visualize
        logger.info(
            "Framework questions completed workflow_id=%s framework=%s step=%s",
            self.workflow_id, framework.value, self.step.value,
        )
        await self.autosave()

    async def submit_answer(self, text: str) -> None:
        """Send one chat message to the generation service."""
        self._require_step(WorkflowStep.visualize, WorkflowStep.review)
        with self._exclusive():
            await self.engine.send_message(text)
        await self.autosave()

    async def toggle_metric(self, metric_id: str) -> bool:
        """Flip one metric in or out of the selection. Returns True if now selected."""
        self._require_step(WorkflowStep.visualize)
        if self._busy:
            raise BusyError()
        if metric_id not in {m.id for m in self.engine.metrics}:
            raise ValidationError("UnknownMetric", f"No metric with id '{metric_id}' in this session")
        selected = self.engine.gate.toggle(metric_id)
        await self.autosave()
        return selected

    async def set_existing_metrics(self, metrics: Sequence[ExistingMetric]) -> None:
        self._require_step(WorkflowStep.input, WorkflowStep.clarify)
        self.existing_metrics = list(metrics)
        await self.autosave()

    async def approve_metrics(
        self,
        selected_ids: Optional[Sequence[str]] = None,
        custom_fields: Optional[Sequence[CustomField]] = None,
    ) -> None:
        """
        Approve the metric set (current selection when selected_ids is None).

        Moves to review unless the service closed the session or reopened the
        metrics checkpoint; then the workflow stays on visualize.
        """
        self._require_step(WorkflowStep.visualize)
        with self._exclusive():
            await self.engine.approve(ApprovalType.metrics, selected_ids, custom_fields)
        if not self.engine.is_closed and self.engine.gate.type != ApprovalType.metrics:
            self.step = WorkflowStep.review
        else:
            logger.info(
                "Metric approval did not advance workflow_id=%s status=%s approval=%s",
                self.workflow_id, self.engine.status.value, self.engine.gate.type.value,
            )
        await self.autosave()

    async def approve_taxonomy(self) -> None:
        """Approve the generated taxonomy; a completed session moves to results."""
        self._require_step(WorkflowStep.review)
        with self._exclusive():
            await self.engine.approve(ApprovalType.taxonomy)
        if self.engine.status == OrchestrationStatus.completed:
            self.step = WorkflowStep.results
        await self.autosave()

    async def reject(self, reason: Optional[str] = None) -> None:
        """Reject the current output, then start over from the input step."""
        self._require_step(WorkflowStep.visualize, WorkflowStep.review)
        with self._exclusive():
            await self.engine.reject(reason)
        logger.info("Workflow rejected workflow_id=%s", self.workflow_id)
        self._back_to_input()

    async def restart(self) -> None:
        if self._busy:
            raise BusyError()
        logger.info("Workflow restarted workflow_id=%s from step=%s", self.workflow_id, self.step.value)
        self._back_to_input()

    def _back_to_input(self) -> None:
        self.engine.reset()
        self.step = WorkflowStep.input
        self.snapshot_id = None
        self.name = DEFAULT_SESSION_NAME
        self.pending_input = None
        self.framework_answers = {}
        self.selected_framework = None
        self.existing_metrics = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_snapshot(self) -> SessionSnapshot:
        """Flatten the workflow and its engine state into a SessionSnapshot."""
        session = self.engine.state()
        context = session.input_context or self.pending_input
        return SessionSnapshot(
            id=self.snapshot_id,
            owner_id=self.owner_id,
            name=self.name,
            status=snapshot_status_for(self.step),
            current_step=self.step,
            product_url=context.url if context else None,
            product_image_data=context.image_data if context else None,
            product_video_data=context.video_data if context else None,
            product_details=context.product_details if context else None,
            existing_metrics=list(self.existing_metrics),
            framework_answers=dict(self.framework_answers),
            selected_framework=self.selected_framework,
            generated_metrics=session.metrics,
            generated_events=session.events,
            conversation_history=session.conversation,
            orchestration_session_id=session.session_id,
            orchestration_status=session.status,
            approval_type=session.approval.type,
            approval_required=session.approval.required,
            selected_metric_ids=session.approval.selection,
            framework_recommendation=session.framework_recommendation,
            clarifying_questions=session.clarifying_questions,
            new_metric_ids=session.new_metric_ids,
            fallback_reason=session.fallback_reason,
        )

    async def save_progress(self, name: Optional[str] = None) -> str:
        """Explicit save. Creates the snapshot on first call; errors are surfaced."""
        if name:
            self.name = name
        snapshot_id = await self.store.save(self.owner_id, self.to_snapshot(), self.snapshot_id)
        self.snapshot_id = snapshot_id
        return snapshot_id

    async def autosave(self) -> None:
        """Best-effort save after a state change. Only runs once a snapshot exists."""
        if self.snapshot_id is None:
            return
        try:
            await self.store.save(self.owner_id, self.to_snapshot(), self.snapshot_id)
        except PersistenceError as exc:
            logger.warning(
                "Autosave failed workflow_id=%s snapshot_id=%s: %s",
                self.workflow_id, self.snapshot_id, type(exc).__name__,
            )

    async def resume_session(self, snapshot_id: str) -> None:
        """
        Restore a saved snapshot verbatim: engine state, step and bookkeeping.

        No request is replayed against the generation service. Load failures
        (NotFound / Forbidden / PersistenceError) leave the workflow untouched.
        """
        with self._exclusive():
            snapshot = await self.store.load(self.owner_id, snapshot_id)

        self.engine = OrchestrationEngine.from_state(self._client, snapshot.session_state())
        self.step = snapshot.current_step
        self.snapshot_id = snapshot.id
        self.name = snapshot.name
        self.pending_input = snapshot.input_context()
        self.framework_answers = dict(snapshot.framework_answers)
        self.selected_framework = snapshot.selected_framework
        self.existing_metrics = list(snapshot.existing_metrics)
        logger.info(
            "Session resumed workflow_id=%s snapshot_id=%s step=%s",
            self.workflow_id, snapshot_id, self.step.value,
        )
