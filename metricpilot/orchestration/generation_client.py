"""
generation_client.py - HTTP boundary to the external generation service.

One POST per call, no retry: a failed round is reported to the engine, which
leaves its state intact so the user can repeat the action.

Every failure is converted here, never further up:
  - httpx transport errors / timeouts     -> TransportError
  - non-2xx status, {"error": ...} body,
    or {"status": "error"} body           -> TransportError (message from body)
  - body that is not a valid envelope     -> ProtocolError

The httpx.AsyncClient is created once in main.py lifespan (connection pool
reuse) and passed in; this module creates no clients of its own.
"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from metricpilot.config import settings
from metricpilot.errors import ProtocolError, TransportError
from metricpilot.orchestration.schemas import (
    OrchestrationRequest,
    OrchestrationResponse,
    response_adapter,
)

logger = logging.getLogger(__name__)


def _error_message(payload: object) -> Optional[str]:
    """Pull a human-readable failure message out of a response body, if any."""
    if not isinstance(payload, dict):
        return None
    for key in ("errorMessage", "error", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class GenerationClient:
    """Sends request envelopes to the generation service and parses responses."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self._http = http_client
        self._url = url or settings.generation_service_url
        self._api_key = api_key if api_key is not None else settings.generation_api_key
        self._timeout_s = timeout_s or settings.generation_timeout_s

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def send(self, request: OrchestrationRequest) -> OrchestrationResponse:
        """
        Send one request envelope and return the parsed response.

        Raises:
            TransportError: network failure, timeout, or service-declared failure.
            ProtocolError: the body is not JSON or not a valid response envelope.
        """
        logger.info(
            "Calling generation service action=%s session_id=%s request_id=%s",
            request.action.value, request.session_id, request.request_id,
        )
        try:
            response = await self._http.post(
                self._url,
                json=request.to_wire(),
                headers=self._headers(),
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Generation service unreachable action=%s: %s",
                request.action.value, type(exc).__name__,
            )
            raise TransportError(f"Generation service unreachable: {type(exc).__name__}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            message = _error_message(payload) or f"Generation service returned HTTP {response.status_code}"
            logger.error(
                "Generation service failed action=%s http_status=%d",
                request.action.value, response.status_code,
            )
            raise TransportError(message, status_code=response.status_code)

        if not isinstance(payload, dict):
            raise ProtocolError("Generation service returned a non-JSON body", status_code=response.status_code)

        if payload.get("status") == "error" or "error" in payload:
            message = _error_message(payload) or "Generation service reported an error"
            logger.error("Generation service declared failure action=%s", request.action.value)
            raise TransportError(message, status_code=response.status_code)

        try:
            parsed = response_adapter.validate_python(payload)
        except PydanticValidationError as exc:
            logger.error(
                "Malformed generation response action=%s errors=%d",
                request.action.value, exc.error_count(),
            )
            raise ProtocolError(f"Malformed generation response: {exc.error_count()} invalid field(s)") from exc

        logger.info(
            "Generation response received action=%s status=%s turns=%d metrics=%s events=%s",
            request.action.value,
            parsed.status,
            len(parsed.conversation_turns),
            len(parsed.metrics) if parsed.metrics is not None else "-",
            len(parsed.events) if parsed.events is not None else "-",
        )
        return parsed
