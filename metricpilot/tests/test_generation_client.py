"""
test_generation_client.py - Wire behaviour of GenerationClient.

Uses httpx.MockTransport so no network is involved. Every failure mode must
come out as TransportError or ProtocolError; no raw httpx or pydantic
exception may escape.
"""
from __future__ import annotations

import json

import httpx
import pytest

from metricpilot.errors import ProtocolError, TransportError
from metricpilot.orchestration.generation_client import GenerationClient
from metricpilot.orchestration.request_builder import build_start_request
from metricpilot.orchestration.schemas import CompletedResponse, WaitingApprovalResponse
from metricpilot.tests.factories import URL_INPUT, assistant, metric_wire

SERVICE_URL = "http://generation.test/generate-taxonomy"


def _client(handler) -> GenerationClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GenerationClient(http, url=SERVICE_URL, api_key="secret", timeout_s=5.0)


def _json(status_code: int, body) -> httpx.Response:
    return httpx.Response(status_code, json=body)


@pytest.mark.asyncio
async def test_posts_camelcase_envelope_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return _json(200, {"sessionId": "s1", "status": "completed", "conversationTurns": []})

    await _client(handler).send(build_start_request(URL_INPUT))

    assert seen["url"] == SERVICE_URL
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["action"] == "start"
    assert seen["body"]["inputContext"] == {"url": "https://a.com"}


@pytest.mark.asyncio
async def test_parses_waiting_approval_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(200, {
            "sessionId": "s1",
            "status": "waiting_approval",
            "requiresApproval": True,
            "approvalType": "metrics",
            "metrics": [metric_wire("m1")],
            "conversationTurns": [assistant("Here are 1 metric")],
        })

    parsed = await _client(handler).send(build_start_request(URL_INPUT))

    assert isinstance(parsed, WaitingApprovalResponse)
    assert parsed.session_id == "s1"
    assert [m.id for m in parsed.metrics] == ["m1"]
    assert parsed.conversation_turns[0].text == "Here are 1 metric"


@pytest.mark.asyncio
async def test_unknown_keys_are_ignored():
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(200, {"sessionId": "s1", "status": "completed", "conversationTurns": [], "debug": {"x": 1}})

    parsed = await _client(handler).send(build_start_request(URL_INPUT))
    assert isinstance(parsed, CompletedResponse)


@pytest.mark.asyncio
async def test_network_error_becomes_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as exc_info:
        await _client(handler).send(build_start_request(URL_INPUT))
    assert not isinstance(exc_info.value, ProtocolError)


@pytest.mark.asyncio
async def test_timeout_becomes_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransportError):
        await _client(handler).send(build_start_request(URL_INPUT))


@pytest.mark.asyncio
async def test_http_error_status_uses_body_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(500, {"errorMessage": "AI gateway unavailable"})

    with pytest.raises(TransportError) as exc_info:
        await _client(handler).send(build_start_request(URL_INPUT))
    assert exc_info.value.status_code == 500
    assert "AI gateway unavailable" in str(exc_info.value)


@pytest.mark.asyncio
async def test_http_error_status_without_json_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="Too Many Requests")

    with pytest.raises(TransportError) as exc_info:
        await _client(handler).send(build_start_request(URL_INPUT))
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"status": "error", "errorMessage": "boom", "conversationTurns": []},
    {"error": "Validation failed"},
])
async def test_service_declared_error_is_transport_error(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(200, body)

    with pytest.raises(TransportError) as exc_info:
        await _client(handler).send(build_start_request(URL_INPUT))
    assert not isinstance(exc_info.value, ProtocolError)


@pytest.mark.asyncio
async def test_non_json_body_is_protocol_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>ok</html>")

    with pytest.raises(ProtocolError):
        await _client(handler).send(build_start_request(URL_INPUT))


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"sessionId": "s1", "status": "thinking", "conversationTurns": []},
    {"sessionId": "s1", "status": "waiting_approval", "conversationTurns": []},
    {"sessionId": "s1", "status": "completed", "conversationTurns": [{"role": "robot", "text": "x"}]},
])
async def test_malformed_envelope_is_protocol_error(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(200, body)

    with pytest.raises(ProtocolError):
        await _client(handler).send(build_start_request(URL_INPUT))
