"""
schemas.py - Workflow Pydantic v2 data contracts.

Defines:
  - WorkflowStep, SnapshotStatus enums
  - SessionSnapshot   (flattened, persisted copy of a workflow + its session)
  - WorkflowState     (controller state cached in Redis between HTTP requests)
  - Request / response bodies for the workflow HTTP routes
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from metricpilot.orchestration.schemas import (
    MAX_CUSTOM_FIELDS,
    MAX_MESSAGE_LEN,
    MAX_SELECTION,
    ApprovalState,
    ApprovalType,
    ClarifyingQuestion,
    ConversationTurn,
    CustomField,
    ExistingMetric,
    FrameworkRecommendation,
    FrameworkType,
    InputContext,
    Metric,
    OrchestrationStatus,
    SessionState,
    TaxonomyEvent,
)

DEFAULT_SESSION_NAME = "Untitled Session"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class WorkflowStep(str, Enum):
    input = "input"
    clarify = "clarify"          # framework questions
    visualize = "visualize"      # metric framework + chat, metrics checkpoint
    review = "review"            # taxonomy review, taxonomy checkpoint
    results = "results"


class SnapshotStatus(str, Enum):
    draft = "draft"
    in_progress = "in_progress"
    completed = "completed"


def snapshot_status_for(step: WorkflowStep) -> SnapshotStatus:
    if step in (WorkflowStep.input, WorkflowStep.clarify):
        return SnapshotStatus.draft
    if step == WorkflowStep.results:
        return SnapshotStatus.completed
    return SnapshotStatus.in_progress


# ---------------------------------------------------------------------------
# SessionSnapshot - persisted form
# ---------------------------------------------------------------------------

class SessionSnapshot(BaseModel):
    """
    Full, flat copy of a workflow and its orchestration session.

    A save always writes every field; there are no partial updates.
    id / created_at / updated_at are assigned by the store.
    """
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    owner_id: str = Field(..., min_length=1)
    name: str = DEFAULT_SESSION_NAME
    status: SnapshotStatus = SnapshotStatus.draft
    current_step: WorkflowStep = WorkflowStep.input

    # --- Input context ---
    product_url: Optional[str] = None
    product_image_data: Optional[str] = None
    product_video_data: Optional[str] = None
    product_details: Optional[str] = None

    # --- Framework questions ---
    existing_metrics: List[ExistingMetric] = Field(default_factory=list)
    framework_answers: dict[str, str] = Field(default_factory=dict)
    selected_framework: Optional[FrameworkType] = None

    # --- Orchestration session ---
    generated_metrics: List[Metric] = Field(default_factory=list)
    generated_events: List[TaxonomyEvent] = Field(default_factory=list)
    conversation_history: List[ConversationTurn] = Field(default_factory=list)
    orchestration_session_id: Optional[str] = None
    orchestration_status: OrchestrationStatus = OrchestrationStatus.idle
    approval_type: ApprovalType = ApprovalType.none
    approval_required: bool = False
    selected_metric_ids: List[str] = Field(default_factory=list)

    # --- Latest round's guidance, restored on resume ---
    framework_recommendation: Optional[FrameworkRecommendation] = None
    clarifying_questions: List[ClarifyingQuestion] = Field(default_factory=list)
    new_metric_ids: List[str] = Field(default_factory=list)
    fallback_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def input_context(self) -> Optional[InputContext]:
        context = InputContext(
            url=self.product_url,
            image_data=self.product_image_data,
            video_data=self.product_video_data,
            product_details=self.product_details,
        )
        return None if context.is_empty else context

    def session_state(self) -> SessionState:
        """Engine state embedded in this snapshot."""
        has_session = self.orchestration_session_id is not None
        return SessionState(
            session_id=self.orchestration_session_id,
            status=self.orchestration_status,
            input_context=self.input_context() if has_session else None,
            metrics=list(self.generated_metrics),
            events=list(self.generated_events),
            conversation=list(self.conversation_history),
            approval=ApprovalState(
                required=self.approval_required,
                type=self.approval_type,
                selection=list(self.selected_metric_ids),
            ),
            framework_recommendation=self.framework_recommendation,
            clarifying_questions=list(self.clarifying_questions),
            new_metric_ids=list(self.new_metric_ids),
            fallback_reason=self.fallback_reason,
        )


# ---------------------------------------------------------------------------
# WorkflowState - Redis-cached controller state
# ---------------------------------------------------------------------------

class WorkflowState(BaseModel):
    """Everything WorkflowController needs to continue on the next request."""
    workflow_id: str
    owner_id: str
    step: WorkflowStep = WorkflowStep.input
    snapshot_id: Optional[str] = None
    name: str = DEFAULT_SESSION_NAME
    pending_input: Optional[InputContext] = None
    framework_answers: dict[str, str] = Field(default_factory=dict)
    selected_framework: Optional[FrameworkType] = None
    existing_metrics: List[ExistingMetric] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    session: SessionState = Field(default_factory=SessionState)


# ---------------------------------------------------------------------------
# HTTP request bodies
# ---------------------------------------------------------------------------

class StartAnalysisRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    input: InputContext
    name: Optional[str] = Field(default=None, max_length=200)


class QuestionsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    answers: dict[str, str] = Field(default_factory=dict)
    framework: FrameworkType = FrameworkType.driver_tree


class MessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LEN)


class ApproveMetricsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    selected_ids: Optional[List[str]] = Field(default=None, max_length=MAX_SELECTION)
    custom_fields: List[CustomField] = Field(default_factory=list, max_length=MAX_CUSTOM_FIELDS)


class RejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = Field(default="User requested regeneration", max_length=MAX_MESSAGE_LEN)


class SaveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=200)


class ExistingMetricsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metrics: List[ExistingMetric] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HTTP response bodies
# ---------------------------------------------------------------------------

class WorkflowView(BaseModel):
    """What the client renders for the current step."""
    workflow_id: str
    step: WorkflowStep
    snapshot_id: Optional[str] = None
    name: str
    framework_answers: dict[str, str] = Field(default_factory=dict)
    selected_framework: Optional[FrameworkType] = None
    existing_metrics: List[ExistingMetric] = Field(default_factory=list)
    session: SessionState


class SessionSummary(BaseModel):
    """One row of the saved-sessions list."""
    id: str
    name: str
    status: SnapshotStatus
    current_step: WorkflowStep
    metric_count: int
    event_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "SessionSummary":
        return cls(
            id=snapshot.id or "",
            name=snapshot.name,
            status=snapshot.status,
            current_step=snapshot.current_step,
            metric_count=len(snapshot.generated_metrics),
            event_count=len(snapshot.generated_events),
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
        )


__all__ = [
    "DEFAULT_SESSION_NAME",
    "WorkflowStep",
    "SnapshotStatus",
    "snapshot_status_for",
    "SessionSnapshot",
    "WorkflowState",
    "StartAnalysisRequest",
    "QuestionsRequest",
    "MessageRequest",
    "ApproveMetricsRequest",
    "RejectRequest",
    "SaveRequest",
    "ExistingMetricsRequest",
    "WorkflowView",
    "SessionSummary",
]
