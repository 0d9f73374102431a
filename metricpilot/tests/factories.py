"""
Builders for generation-service payloads and records used across the tests.

Payload dicts are camelCase, exactly as the service sends them.
"""
from __future__ import annotations

from typing import Any, Optional

from metricpilot.orchestration.schemas import InputContext, Metric, response_adapter

URL_INPUT = InputContext(url="https://a.com")


def metric(metric_id: str, name: Optional[str] = None, **extra: Any) -> Metric:
    return Metric(id=metric_id, name=name or f"Metric {metric_id}", **extra)


def metric_wire(metric_id: str, name: Optional[str] = None) -> dict:
    return {"id": metric_id, "name": name or f"Metric {metric_id}", "category": "engagement"}


def event_wire(event_name: str) -> dict:
    return {"event_name": event_name, "description": f"{event_name} fired", "trigger_action": "click"}


def assistant(text: str) -> dict:
    return {"role": "assistant", "text": text}


def response(**payload: Any):
    """Parse a camelCase response body; conversationTurns defaults to []."""
    payload.setdefault("conversationTurns", [])
    return response_adapter.validate_python(payload)


def waiting_metrics(session_id: str = "s1", metric_ids: tuple = ("m1",), **extra: Any):
    return response(
        sessionId=session_id,
        status="waiting_approval",
        requiresApproval=True,
        approvalType="metrics",
        metrics=[metric_wire(m) for m in metric_ids],
        **extra,
    )


def waiting_taxonomy(session_id: str = "s1", events: tuple = ("signup_completed",), **extra: Any):
    return response(
        sessionId=session_id,
        status="waiting_approval",
        requiresApproval=True,
        approvalType="taxonomy",
        events=[event_wire(e) for e in events],
        **extra,
    )


def completed(session_id: str = "s1", **extra: Any):
    return response(sessionId=session_id, status="completed", **extra)
