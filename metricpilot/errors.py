"""
errors.py - MetricPilot error taxonomy.

Every failure that crosses the engine / controller boundary is one of these.
Raw httpx, SQLAlchemy and pydantic exceptions are converted at the client and
store boundaries so nothing upstream ever sees them.

  TransportError    generation call failed (network, non-2xx, service-declared error)
    ProtocolError   response body did not match the response envelope
  ValidationError   local precondition violation, raised before any network call
    BusyError       another action is still in flight for this session
  PersistenceError  session store operation failed
    NotFound        snapshot does not exist
    Forbidden       snapshot belongs to another owner

main.py maps each class to an HTTP status and an error-envelope code.
"""
from __future__ import annotations

from typing import Optional


class MetricPilotError(Exception):
    """Base class for every error MetricPilot raises on purpose."""

    http_status: int = 500
    error_code: str = "INTERNAL_ERROR"


class TransportError(MetricPilotError):
    """The generation service could not be reached or answered with a failure."""

    http_status = 502
    error_code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(TransportError):
    """The generation service answered, but not with a valid response envelope."""


class ValidationError(MetricPilotError):
    """
    A precondition was violated locally. Raised before any request is sent.

    code is a short machine-readable reason, e.g. "EmptySelection".
    """

    http_status = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        super().__init__(message or code)
        self.code = code


class BusyError(ValidationError):
    """A mutating action was attempted while another one is still pending."""

    http_status = 409
    error_code = "CONFLICT"

    def __init__(self, message: str = "Another action is still in progress for this session") -> None:
        super().__init__("ActionInProgress", message)


class PersistenceError(MetricPilotError):
    """Session store operation failed (transport or ownership)."""

    http_status = 503
    error_code = "PERSISTENCE_ERROR"


class NotFound(PersistenceError):
    http_status = 404
    error_code = "NOT_FOUND"


class Forbidden(PersistenceError):
    http_status = 403
    error_code = "FORBIDDEN"


__all__ = [
    "MetricPilotError",
    "TransportError",
    "ProtocolError",
    "ValidationError",
    "BusyError",
    "PersistenceError",
    "NotFound",
    "Forbidden",
]
