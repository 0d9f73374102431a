"""
request_builder.py - Builds generation-service request envelopes.

Pure functions: they read a SessionState and return a new OrchestrationRequest.
The service is stateless, so every follow-up action carries the context it
needs (input context, accumulated metrics / events, active checkpoint) back
to it.
"""
from __future__ import annotations

from typing import Optional, Sequence

from metricpilot.orchestration.schemas import (
    Action,
    ApprovalType,
    CustomField,
    InputContext,
    OrchestrationRequest,
    SessionState,
)


def _active_approval_type(state: SessionState) -> Optional[ApprovalType]:
    if state.approval.type == ApprovalType.none:
        return None
    return state.approval.type


def build_start_request(input_context: InputContext) -> OrchestrationRequest:
    return OrchestrationRequest(action=Action.start, input_context=input_context)


def build_continue_request(state: SessionState, user_message: str) -> OrchestrationRequest:
    return OrchestrationRequest(
        session_id=state.session_id,
        action=Action.continue_,
        user_message=user_message,
        input_context=state.input_context,
        metrics=list(state.metrics),
        events=list(state.events),
        approval_type=_active_approval_type(state),
    )


def build_approve_request(
    state: SessionState,
    approval_type: ApprovalType,
    selection: Sequence[str],
    custom_fields: Optional[Sequence[CustomField]] = None,
) -> OrchestrationRequest:
    """
    Approve the open checkpoint.

    Metric approval sends the kept ids; taxonomy approval also sends the
    current events so the service can finalise exactly what the user saw.
    """
    is_metrics = approval_type == ApprovalType.metrics
    return OrchestrationRequest(
        session_id=state.session_id,
        action=Action.approve,
        approval_type=approval_type,
        selection=list(selection) if is_metrics else None,
        input_context=state.input_context,
        metrics=list(state.metrics),
        events=None if is_metrics else list(state.events),
        custom_fields=list(custom_fields) if custom_fields else None,
    )


def build_reject_request(state: SessionState, reason: Optional[str] = None) -> OrchestrationRequest:
    return OrchestrationRequest(
        session_id=state.session_id,
        action=Action.reject,
        user_message=reason,
    )
