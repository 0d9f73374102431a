"""
engine.py - OrchestrationEngine, the session state machine.

The engine is the single source of truth for one orchestration session and the
only component that mutates it. It exposes the four workflow actions (start,
send_message, approve, reject) plus reset, talks to the generation service
through a GenerationClient, and applies each response to its state.

Status flow (driven by server responses; `error` by local failures):

    idle --start--> processing --> waiting_approval(metrics)
         --approve(metrics)--> waiting_approval(taxonomy)
         --approve(taxonomy)--> completed
    any open state --reject--> rejected
    any state --reset--> idle

Rules enforced here:
  - Preconditions are checked before any request is built; violations raise
    ValidationError and change nothing.
  - A failed round sets status=error and leaves every other field as it was.
  - send_message appends the user's turn before the call and never removes it.
  - Server turns are appended verbatim after local turns (merge_turns).
  - Metrics accrue by id, first write wins, unless the response flags a full
    replacement. Events are replaced whenever a response carries them.
  - A response that would push the session past MAX_METRICS metrics or
    MAX_EVENTS events is a ProtocolError, so every follow-up request fits.
  - Approved metric ids must name generated metrics.
  - completed / rejected sessions accept nothing but reset().
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from metricpilot.errors import MetricPilotError, ProtocolError, TransportError, ValidationError
from metricpilot.orchestration.approval import ApprovalGate
from metricpilot.orchestration.conversation import ConversationLog
from metricpilot.orchestration.request_builder import (
    build_approve_request,
    build_continue_request,
    build_reject_request,
    build_start_request,
)
from metricpilot.orchestration.schemas import (
    MAX_EVENTS,
    MAX_MESSAGE_LEN,
    MAX_METRICS,
    TERMINAL_STATUSES,
    Action,
    ApprovalState,
    ApprovalType,
    ClarifyingQuestion,
    CompletedResponse,
    CustomField,
    FrameworkRecommendation,
    InputContext,
    Metric,
    OrchestrationRequest,
    OrchestrationResponse,
    OrchestrationStatus,
    ProcessingResponse,
    RejectedResponse,
    SessionState,
    TaxonomyEvent,
    WaitingApprovalResponse,
)

logger = logging.getLogger(__name__)


class SupportsGeneration(Protocol):
    async def send(self, request: OrchestrationRequest) -> OrchestrationResponse: ...


class OrchestrationEngine:
    """State machine for one orchestration session."""

    def __init__(self, client: SupportsGeneration, state: Optional[SessionState] = None) -> None:
        self._client = client
        self._load(state or SessionState())

    @classmethod
    def from_state(cls, client: SupportsGeneration, state: SessionState) -> "OrchestrationEngine":
        """Rebuild an engine verbatim from a stored SessionState (no replay)."""
        return cls(client, state)

    def _load(self, state: SessionState) -> None:
        self.session_id: Optional[str] = state.session_id
        self.status: OrchestrationStatus = state.status
        self.input_context: Optional[InputContext] = state.input_context
        self._metrics: list[Metric] = list(state.metrics)
        self._events: list[TaxonomyEvent] = list(state.events)
        self.conversation = ConversationLog(state.conversation)
        self.gate = ApprovalGate(state.approval)
        self.framework_recommendation: Optional[FrameworkRecommendation] = state.framework_recommendation
        self.clarifying_questions: list[ClarifyingQuestion] = list(state.clarifying_questions)
        self.new_metric_ids: list[str] = list(state.new_metric_ids)
        self.fallback_reason: Optional[str] = state.fallback_reason

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def metrics(self) -> list[Metric]:
        return list(self._metrics)

    @property
    def events(self) -> list[TaxonomyEvent]:
        return list(self._events)

    @property
    def approval(self) -> ApprovalState:
        return self.gate.state()

    @property
    def is_closed(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def state(self) -> SessionState:
        return SessionState(
            session_id=self.session_id,
            status=self.status,
            input_context=self.input_context,
            metrics=list(self._metrics),
            events=list(self._events),
            conversation=self.conversation.to_list(),
            approval=self.gate.state(),
            framework_recommendation=self.framework_recommendation,
            clarifying_questions=list(self.clarifying_questions),
            new_metric_ids=list(self.new_metric_ids),
            fallback_reason=self.fallback_reason,
        )

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if self.is_closed:
            raise ValidationError(
                "SessionClosed",
                f"Session is {self.status.value}; reset before starting again",
            )

    def _require_session(self) -> None:
        self._require_open()
        if self.session_id is None:
            raise ValidationError("NoActiveSession", "No active session; start one first")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def start(self, input_context: InputContext) -> SessionState:
        self._require_open()
        if self.session_id is not None or self.status not in (
            OrchestrationStatus.idle, OrchestrationStatus.error,
        ):
            raise ValidationError("SessionAlreadyStarted", "Session already started; reset first")
        if input_context.is_empty:
            raise ValidationError(
                "MissingInput",
                "Provide a URL, image, video frame or product details",
            )

        self.input_context = input_context
        await self._round(build_start_request(input_context))
        return self.state()

    async def send_message(self, text: str) -> SessionState:
        self._require_session()
        if not text or not text.strip():
            raise ValidationError("EmptyMessage", "Message text is empty")
        if len(text) > MAX_MESSAGE_LEN:
            raise ValidationError("MessageTooLong", f"Messages are limited to {MAX_MESSAGE_LEN} characters")

        request = self._build(build_continue_request, self.state(), text)
        # Optimistic: visible immediately, kept even if the round fails
        self.conversation.append_user(text)
        await self._round(request)
        return self.state()

    async def approve(
        self,
        approval_type: ApprovalType,
        selection: Optional[Sequence[str]] = None,
        custom_fields: Optional[Sequence[CustomField]] = None,
    ) -> SessionState:
        self._require_session()
        if self.status not in (OrchestrationStatus.waiting_approval, OrchestrationStatus.error):
            raise ValidationError(
                "NotAwaitingApproval",
                f"Nothing to approve while session is {self.status.value}",
            )
        chosen = self.gate.validate_for_approval(
            approval_type, selection, known_ids={m.id for m in self._metrics},
        )
        request = self._build(build_approve_request, self.state(), approval_type, chosen, custom_fields)
        if approval_type == ApprovalType.metrics:
            self.gate.select(chosen)

        await self._round(request)
        return self.state()

    async def reject(self, reason: Optional[str] = None) -> SessionState:
        self._require_session()
        if reason is not None and len(reason) > MAX_MESSAGE_LEN:
            raise ValidationError("MessageTooLong", f"Reasons are limited to {MAX_MESSAGE_LEN} characters")
        await self._round(self._build(build_reject_request, self.state(), reason))
        return self.state()

    def reset(self) -> None:
        """Return to the pristine state of a freshly constructed engine."""
        logger.info("Engine reset session_id=%s status=%s", self.session_id, self.status.value)
        self._load(SessionState())

    # ------------------------------------------------------------------
    # Round trip
    # ------------------------------------------------------------------

    @staticmethod
    def _build(builder: Callable[..., OrchestrationRequest], *args) -> OrchestrationRequest:
        """Run a request builder; envelope limit violations become ValidationError."""
        try:
            return builder(*args)
        except PydanticValidationError as exc:
            raise ValidationError(
                "LimitExceeded",
                f"Request exceeds input limits ({exc.error_count()} violation(s))",
            ) from exc

    def _check_limits(self, response: OrchestrationResponse) -> None:
        if response.metrics is not None:
            ids = {m.id for m in response.metrics}
            if not response.replace_metrics:
                ids |= {m.id for m in self._metrics}
            if len(ids) > MAX_METRICS:
                raise ProtocolError(
                    f"Response would grow the session to {len(ids)} metrics (limit {MAX_METRICS})"
                )
        if response.events is not None and len(response.events) > MAX_EVENTS:
            raise ProtocolError(
                f"Response carried {len(response.events)} events (limit {MAX_EVENTS})"
            )

    async def _round(self, request: OrchestrationRequest) -> None:
        """Send one request and apply its response; any failure ends the round in `error`."""
        self.status = OrchestrationStatus.processing
        try:
            response = await self._client.send(request)
            if request.action == Action.start and not response.session_id:
                raise ProtocolError("Start response carried no sessionId")
            self._check_limits(response)
        except MetricPilotError:
            self.status = OrchestrationStatus.error
            raise
        except Exception as exc:
            logger.error(
                "Generation call failed action=%s session_id=%s",
                request.action.value, self.session_id, exc_info=True,
            )
            self.status = OrchestrationStatus.error
            raise TransportError(f"Generation call failed: {type(exc).__name__}") from exc

        self.apply_response(response)

    def apply_response(self, response: OrchestrationResponse) -> None:
        """Apply one server response to the session."""
        self.session_id = response.session_id or self.session_id
        self.status = OrchestrationStatus(response.status)

        self._accrue_metrics(response.metrics, replace=response.replace_metrics)
        if response.events is not None:
            self._events = list(response.events)
        added_turns = self.conversation.merge(response.conversation_turns)

        if isinstance(response, WaitingApprovalResponse):
            self.gate.open_checkpoint(response.approval_type)
        elif isinstance(response, (CompletedResponse, RejectedResponse)):
            self.gate.close_checkpoint()
        elif isinstance(response, ProcessingResponse):
            if response.requires_approval and response.approval_type not in (None, ApprovalType.none):
                self.gate.open_checkpoint(response.approval_type)
            else:
                self.gate.close_checkpoint()
        else:
            raise ProtocolError(f"Unhandled response kind: {type(response).__name__}")

        if response.framework_recommendation is not None:
            self.framework_recommendation = response.framework_recommendation
        if response.clarifying_questions is not None:
            self.clarifying_questions = list(response.clarifying_questions)
        self.fallback_reason = response.fallback_reason
        if response.fallback_reason:
            logger.warning(
                "Generation service used fallback output session_id=%s reason=%s",
                self.session_id, response.fallback_reason,
            )

        logger.info(
            "Applied response session_id=%s status=%s approval=%s metrics=%d new_metrics=%d events=%d turns_added=%d",
            self.session_id,
            self.status.value,
            self.gate.type.value,
            len(self._metrics),
            len(self.new_metric_ids),
            len(self._events),
            added_turns,
        )

    def _accrue_metrics(self, incoming: Optional[Sequence[Metric]], replace: bool) -> None:
        if incoming is None:
            self.new_metric_ids = []
            return

        known = {m.id for m in self._metrics}
        if replace:
            merged: list[Metric] = []
            seen: set[str] = set()
            for metric in incoming:
                if metric.id not in seen:
                    merged.append(metric)
                    seen.add(metric.id)
            new_ids = [m.id for m in merged if m.id not in known]
            self._metrics = merged
            self.gate.retain(seen)
        else:
            new_ids = []
            for metric in incoming:
                if metric.id not in known:
                    self._metrics.append(metric)
                    known.add(metric.id)
                    new_ids.append(metric.id)

        self.new_metric_ids = new_ids
        self.gate.seed(new_ids)
