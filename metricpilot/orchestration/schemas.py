"""
schemas.py - Orchestration Pydantic v2 data contracts.

Defines:
  - OrchestrationStatus, ApprovalType, Action, Role, FrameworkType enums
  - InputContext        (immutable product description supplied at start)
  - Metric, TaxonomyEvent, CustomField, ExistingMetric  (generated / imported records)
  - ConversationTurn    (one message in the conversation log)
  - ApprovalState       (gate checkpoint + current metric selection)
  - OrchestrationRequest (request envelope sent to the generation service)
  - *Response models    (tagged union on `status`, parsed with response_adapter)
  - SessionState        (serializable projection of the engine's Session)

Wire format is camelCase JSON (the generation service's convention); Python
attributes are snake_case. Metric and TaxonomyEvent keep the service's own keys
and allow extra fields so records round-trip verbatim through snapshots.
"""
import uuid
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Input limits - mirror the generation service's request validation
# ---------------------------------------------------------------------------
MAX_URL_LEN = 2_000
MAX_FRAME_LEN = 15_000_000      # base64 data URL of an image / video frame
MAX_DETAILS_LEN = 10_000
MAX_MESSAGE_LEN = 5_000
MAX_METRICS = 50
MAX_EVENTS = 200
MAX_SELECTION = 50
MAX_CUSTOM_FIELDS = 20


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrchestrationStatus(str, Enum):
    idle = "idle"
    processing = "processing"
    waiting_approval = "waiting_approval"
    completed = "completed"
    error = "error"
    rejected = "rejected"


TERMINAL_STATUSES = frozenset({OrchestrationStatus.completed, OrchestrationStatus.rejected})


class ApprovalType(str, Enum):
    metrics = "metrics"
    taxonomy = "taxonomy"
    none = "none"     # No checkpoint open - never sent on the wire


class Action(str, Enum):
    start = "start"
    continue_ = "continue"
    approve = "approve"
    reject = "reject"


class Role(str, Enum):
    user = "user"
    assistant = "assistant"


class FrameworkType(str, Enum):
    driver_tree = "driver_tree"
    conversion_funnel = "conversion_funnel"
    growth_flywheel = "growth_flywheel"


class _WireModel(BaseModel):
    """Base for envelope models: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Input context
# ---------------------------------------------------------------------------

class InputContext(_WireModel):
    """
    Product description supplied when a session starts.

    At most one of url / image_data / video_data is set; product_details is
    optional free text that may accompany any of them (or stand alone).
    Frozen: the engine never mutates it, restart replaces it wholesale.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    url: Optional[str] = Field(default=None, max_length=MAX_URL_LEN)
    image_data: Optional[str] = Field(default=None, max_length=MAX_FRAME_LEN)
    video_data: Optional[str] = Field(default=None, max_length=MAX_FRAME_LEN)
    product_details: Optional[str] = Field(default=None, max_length=MAX_DETAILS_LEN)

    @field_validator("url")
    @classmethod
    def _blank_url_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _single_source(self) -> "InputContext":
        sources = [s for s in (self.url, self.image_data, self.video_data) if s]
        if len(sources) > 1:
            raise ValueError("Provide at most one of url, imageData or videoData")
        return self

    @property
    def is_empty(self) -> bool:
        return not (self.url or self.image_data or self.video_data or self.product_details)


# ---------------------------------------------------------------------------
# Generated and imported records
# ---------------------------------------------------------------------------

class Metric(BaseModel):
    """A recommended measurement metric. Unique by id within a session."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., max_length=200)
    description: str = Field(default="", max_length=1000)
    category: str = Field(default="", max_length=100)
    example_events: List[str] = Field(default_factory=list, max_length=20)
    calculation: Optional[str] = Field(default=None, max_length=500)
    business_questions: List[str] = Field(
        default_factory=list, max_length=10, alias="businessQuestions",
    )


class TaxonomyEvent(BaseModel):
    """One tracking event in a generated taxonomy."""
    model_config = ConfigDict(extra="allow")

    event_name: str = Field(..., max_length=200)
    description: str = Field(default="", max_length=1000)
    trigger_action: str = Field(default="", max_length=100)
    screen: str = Field(default="", max_length=200)
    event_properties: List[str] = Field(default_factory=list, max_length=50)
    owner: str = Field(default="", max_length=200)
    notes: str = Field(default="", max_length=2000)
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class CustomField(BaseModel):
    """Extra property the user wants on every generated event."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., max_length=100)
    name: str = Field(..., max_length=200)
    type: Optional[str] = Field(default=None, max_length=50)


class ExistingMetric(BaseModel):
    """A metric the user already tracks, imported before generation."""
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    definition: str = ""
    source: Literal["csv", "pasted", "manual"] = "manual"


class ConversationTurn(_WireModel):
    """Single turn in the conversation log. author names the sub-agent, if any."""
    role: Role
    text: str
    author: Optional[str] = None


class FrameworkRecommendation(_WireModel):
    recommended_framework: FrameworkType = FrameworkType.driver_tree
    confidence: float = Field(default=0.8, ge=0, le=1)
    reasoning: str = ""


class ClarifyingQuestion(_WireModel):
    id: str
    question: str
    type: Literal["single_choice", "multiple_choice", "text"] = "text"
    options: List[str] = Field(default_factory=list)


class ApprovalState(BaseModel):
    """Approval checkpoint. selection is an ordered list of metric ids."""
    required: bool = False
    type: ApprovalType = ApprovalType.none
    selection: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Request envelope
# ---------------------------------------------------------------------------

class OrchestrationRequest(_WireModel):
    """
    Request envelope for the generation service.

    request_id is client-generated per call so the service can recognise a
    request that was re-sent after a dropped response.
    """
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    action: Action
    input_context: Optional[InputContext] = None
    user_message: Optional[str] = Field(default=None, max_length=MAX_MESSAGE_LEN)
    approval_type: Optional[ApprovalType] = None
    selection: Optional[List[str]] = Field(default=None, max_length=MAX_SELECTION)
    metrics: Optional[List[Metric]] = Field(default=None, max_length=MAX_METRICS)
    events: Optional[List[TaxonomyEvent]] = Field(default=None, max_length=MAX_EVENTS)
    custom_fields: Optional[List[CustomField]] = Field(default=None, max_length=MAX_CUSTOM_FIELDS)

    def to_wire(self) -> dict:
        """JSON-ready camelCase body; absent fields are omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Response envelope - tagged union on `status`
# ---------------------------------------------------------------------------

class _ResponseBase(_WireModel):
    session_id: Optional[str] = None
    requires_approval: bool = False
    approval_type: Optional[ApprovalType] = None
    metrics: Optional[List[Metric]] = None
    events: Optional[List[TaxonomyEvent]] = None
    conversation_turns: List[ConversationTurn] = Field(default_factory=list)
    # True when `metrics` is a full replacement rather than an increment
    replace_metrics: bool = False
    framework_recommendation: Optional[FrameworkRecommendation] = None
    clarifying_questions: Optional[List[ClarifyingQuestion]] = None
    fallback_reason: Optional[str] = None


class ProcessingResponse(_ResponseBase):
    status: Literal["processing"]


class WaitingApprovalResponse(_ResponseBase):
    status: Literal["waiting_approval"]
    requires_approval: bool = True
    approval_type: ApprovalType

    @model_validator(mode="after")
    def _checkpoint_is_open(self) -> "WaitingApprovalResponse":
        if self.approval_type == ApprovalType.none or not self.requires_approval:
            raise ValueError("waiting_approval responses must open a metrics or taxonomy checkpoint")
        return self


class CompletedResponse(_ResponseBase):
    status: Literal["completed"]


class RejectedResponse(_ResponseBase):
    status: Literal["rejected"]


OrchestrationResponse = Annotated[
    Union[ProcessingResponse, WaitingApprovalResponse, CompletedResponse, RejectedResponse],
    Field(discriminator="status"),
]

response_adapter: TypeAdapter = TypeAdapter(OrchestrationResponse)


# ---------------------------------------------------------------------------
# Session state - what the engine owns, in serializable form
# ---------------------------------------------------------------------------

class SessionState(BaseModel):
    """
    Flat, serializable view of one orchestration session.

    Produced by OrchestrationEngine.state() and accepted by
    OrchestrationEngine.from_state(); two engines with equal SessionState are
    indistinguishable.
    """
    session_id: Optional[str] = None
    status: OrchestrationStatus = OrchestrationStatus.idle
    input_context: Optional[InputContext] = None
    metrics: List[Metric] = Field(default_factory=list)
    events: List[TaxonomyEvent] = Field(default_factory=list)
    conversation: List[ConversationTurn] = Field(default_factory=list)
    approval: ApprovalState = Field(default_factory=ApprovalState)
    framework_recommendation: Optional[FrameworkRecommendation] = None
    clarifying_questions: List[ClarifyingQuestion] = Field(default_factory=list)
    new_metric_ids: List[str] = Field(default_factory=list)
    fallback_reason: Optional[str] = None


__all__ = [
    "OrchestrationStatus",
    "TERMINAL_STATUSES",
    "ApprovalType",
    "Action",
    "Role",
    "FrameworkType",
    "InputContext",
    "Metric",
    "TaxonomyEvent",
    "CustomField",
    "ExistingMetric",
    "ConversationTurn",
    "FrameworkRecommendation",
    "ClarifyingQuestion",
    "ApprovalState",
    "OrchestrationRequest",
    "ProcessingResponse",
    "WaitingApprovalResponse",
    "CompletedResponse",
    "RejectedResponse",
    "OrchestrationResponse",
    "response_adapter",
    "SessionState",
]
