"""
Workflow HTTP routes - POST /api/workflows, GET /api/workflows/{workflow_id},
                        POST /api/workflows/{workflow_id}/<action>,
                        DELETE /api/workflows/{workflow_id},
                        GET|DELETE /api/sessions[/{snapshot_id}],
                        POST /api/sessions/{snapshot_id}/resume

The active workflow lives in Redis between requests (cache.py). Every mutating
route takes the per-workflow lock, rebuilds a WorkflowController from the
cached state, runs exactly one action and writes the state back, including
after a failed generation call so that status=error and the optimistic user
turn survive.

Owner identity is the X-User-Id header.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from metricpilot.cache import (
    acquire_workflow_lock,
    delete_workflow_state,
    get_workflow_state,
    release_workflow_lock,
    set_workflow_state,
)
from metricpilot.errors import Forbidden
from metricpilot.orchestration.generation_client import GenerationClient
from metricpilot.store import SessionStore
from metricpilot.workflow.controller import WorkflowController
from metricpilot.workflow.schemas import (
    ApproveMetricsRequest,
    ExistingMetricsRequest,
    MessageRequest,
    QuestionsRequest,
    RejectRequest,
    SaveRequest,
    SessionSummary,
    StartAnalysisRequest,
)

router = APIRouter(prefix="/api", tags=["workflow"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependencies - resources created once in main.lifespan
# ---------------------------------------------------------------------------

def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


def get_generation_client(request: Request) -> GenerationClient:
    return request.app.state.generation_client


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Owner reference from the X-User-Id header."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    owner_id = x_user_id.strip()
    if len(owner_id) > 64:
        raise HTTPException(status_code=400, detail="X-User-Id must be at most 64 characters")
    return owner_id


class WorkflowDeps:
    """Bundle of per-request dependencies shared by every workflow route."""

    def __init__(
        self,
        owner_id: str = Depends(get_owner_id),
        redis: aioredis.Redis = Depends(get_redis),
        client: GenerationClient = Depends(get_generation_client),
        store: SessionStore = Depends(get_session_store),
    ) -> None:
        self.owner_id = owner_id
        self.redis = redis
        self.client = client
        self.store = store


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _load_controller(deps: WorkflowDeps, workflow_id: str) -> WorkflowController:
    state = await get_workflow_state(deps.redis, workflow_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found or expired")
    if state.owner_id != deps.owner_id:
        raise Forbidden(f"Workflow '{workflow_id}' belongs to another user")
    return WorkflowController.from_state(state, deps.client, deps.store)


@asynccontextmanager
async def _locked_workflow(deps: WorkflowDeps, workflow_id: str) -> AsyncIterator[WorkflowController]:
    """Hold the workflow lock for one action and write the resulting state back."""
    token = await acquire_workflow_lock(deps.redis, workflow_id)
    try:
        controller = await _load_controller(deps, workflow_id)
        try:
            yield controller
        finally:
            await set_workflow_state(deps.redis, controller.dump_state())
    finally:
        await release_workflow_lock(deps.redis, workflow_id, token)


def _view_response(controller: WorkflowController, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=controller.view().model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Workflow endpoints
# ---------------------------------------------------------------------------

@router.post("/workflows")
async def start_workflow(body: StartAnalysisRequest, deps: WorkflowDeps = Depends()) -> JSONResponse:
    """Create a workflow from the product input and move it to the questions step."""
    controller = WorkflowController(deps.client, deps.store, deps.owner_id)
    await controller.start_analysis(body.input, name=body.name)
    await set_workflow_state(deps.redis, controller.dump_state())
    logger.info("Workflow created workflow_id=%s owner_id=%s", controller.workflow_id, deps.owner_id)
    return _view_response(controller, status_code=201)


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, deps: WorkflowDeps = Depends()) -> JSONResponse:
    controller = await _load_controller(deps, workflow_id)
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/questions")
async def complete_questions(
    workflow_id: str, body: QuestionsRequest, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.complete_questions(body.answers, body.framework)
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/messages")
async def send_message(
    workflow_id: str, body: MessageRequest, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.submit_answer(body.text)
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/metrics/{metric_id}/toggle")
async def toggle_metric(
    workflow_id: str, metric_id: str, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.toggle_metric(metric_id)
    return _view_response(controller)


@router.put("/workflows/{workflow_id}/existing-metrics")
async def set_existing_metrics(
    workflow_id: str, body: ExistingMetricsRequest, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.set_existing_metrics(body.metrics)
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/approve/metrics")
async def approve_metrics(
    workflow_id: str, body: ApproveMetricsRequest, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.approve_metrics(body.selected_ids, body.custom_fields or None)
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/approve/taxonomy")
async def approve_taxonomy(workflow_id: str, deps: WorkflowDeps = Depends()) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.approve_taxonomy()
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/reject")
async def reject(
    workflow_id: str, body: RejectRequest, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.reject(body.reason)
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/restart")
async def restart(workflow_id: str, deps: WorkflowDeps = Depends()) -> JSONResponse:
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.restart()
    return _view_response(controller)


@router.post("/workflows/{workflow_id}/save")
async def save_progress(
    workflow_id: str, body: SaveRequest, deps: WorkflowDeps = Depends(),
) -> JSONResponse:
    """Explicit save. Persistence failures are surfaced (503 / 404 / 403)."""
    async with _locked_workflow(deps, workflow_id) as controller:
        await controller.save_progress(body.name)
    return _view_response(controller)


@router.delete("/workflows/{workflow_id}", status_code=204)
async def discard_workflow(workflow_id: str, deps: WorkflowDeps = Depends()) -> None:
    """Drop the active workflow from the cache. Saved sessions are untouched."""
    token = await acquire_workflow_lock(deps.redis, workflow_id)
    try:
        await _load_controller(deps, workflow_id)
        await delete_workflow_state(deps.redis, workflow_id)
    finally:
        await release_workflow_lock(deps.redis, workflow_id, token)


# ---------------------------------------------------------------------------
# Saved sessions
# ---------------------------------------------------------------------------

@router.get("/sessions")
async def list_sessions(deps: WorkflowDeps = Depends()) -> JSONResponse:
    """Saved sessions of the caller, most recently updated first."""
    snapshots = await deps.store.list(deps.owner_id)
    summaries = [SessionSummary.from_snapshot(s).model_dump(mode="json") for s in snapshots]
    return JSONResponse(status_code=200, content={"sessions": summaries})


@router.get("/sessions/{snapshot_id}")
async def get_session(snapshot_id: str, deps: WorkflowDeps = Depends()) -> JSONResponse:
    snapshot = await deps.store.load(deps.owner_id, snapshot_id)
    return JSONResponse(status_code=200, content=snapshot.model_dump(mode="json"))


@router.delete("/sessions/{snapshot_id}", status_code=204)
async def delete_session(snapshot_id: str, deps: WorkflowDeps = Depends()) -> None:
    await deps.store.remove(deps.owner_id, snapshot_id)


@router.post("/sessions/{snapshot_id}/resume")
async def resume_session(snapshot_id: str, deps: WorkflowDeps = Depends()) -> JSONResponse:
    """Open a saved session as a new active workflow. Nothing is replayed."""
    controller = WorkflowController(deps.client, deps.store, deps.owner_id)
    await controller.resume_session(snapshot_id)
    await set_workflow_state(deps.redis, controller.dump_state())
    return _view_response(controller, status_code=201)
