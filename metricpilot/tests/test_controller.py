"""
test_controller.py - WorkflowController step sequencing, autosave and resume.

Uses the AsyncMock generation client and the in-memory SQLite SessionStore.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from metricpilot.errors import BusyError, Forbidden, NotFound, PersistenceError, TransportError, ValidationError
from metricpilot.orchestration.schemas import (
    ApprovalType,
    CustomField,
    ExistingMetric,
    FrameworkType,
    InputContext,
    OrchestrationStatus,
)
from metricpilot.tests.factories import (
    URL_INPUT,
    assistant,
    completed,
    response,
    waiting_metrics,
    waiting_taxonomy,
)
from metricpilot.workflow.controller import WorkflowController, enrich_product_details
from metricpilot.workflow.schemas import SnapshotStatus, WorkflowStep

ANSWERS = {
    "primary_goal": "Increase retention",
    "product_stage": "Growth",
    "business_model": "Subscription",
    "north_star_focus": "Weekly active teams",
}


def _controller(mock_client, store, *responses, owner_id: str = "alice") -> WorkflowController:
    mock_client.send.side_effect = list(responses)
    return WorkflowController(mock_client, store, owner_id)


async def _at_visualize(mock_client, store, *later, metric_ids=("m1", "m2")) -> WorkflowController:
    controller = _controller(mock_client, store, waiting_metrics(metric_ids=metric_ids), *later)
    await controller.start_analysis(URL_INPUT)
    await controller.complete_questions(ANSWERS, FrameworkType.driver_tree)
    return controller


# ---------------------------------------------------------------------------
# Product details enrichment
# ---------------------------------------------------------------------------

class TestEnrichProductDetails:

    def test_block_follows_details(self):
        text = enrich_product_details("A team chat app", ANSWERS, FrameworkType.growth_flywheel)
        assert text == (
            "A team chat app\n\n"
            "User Context:\n"
            "- Primary Goal: Increase retention\n"
            "- Product Stage: Growth\n"
            "- Business Model: Subscription\n"
            "- Key Actions: Not specified\n"
            "- North Star Focus: Weekly active teams\n"
            "- Preferred Framework: growth_flywheel"
        )

    def test_block_stands_alone_without_details(self):
        text = enrich_product_details(None, {}, FrameworkType.driver_tree)
        assert text.startswith("User Context:\n- Primary Goal: Not specified")


# ---------------------------------------------------------------------------
# Step sequencing
# ---------------------------------------------------------------------------

class TestSteps:

    @pytest.mark.asyncio
    async def test_start_analysis_moves_to_clarify_without_service_call(self, mock_client, store):
        controller = _controller(mock_client, store)
        await controller.start_analysis(URL_INPUT, name="Team chat")
        assert controller.step == WorkflowStep.clarify
        assert controller.name == "Team chat"
        assert controller.pending_input == URL_INPUT
        mock_client.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_analysis_requires_input(self, mock_client, store):
        controller = _controller(mock_client, store)
        with pytest.raises(ValidationError) as exc_info:
            await controller.start_analysis(InputContext())
        assert exc_info.value.code == "MissingInput"
        assert controller.step == WorkflowStep.input

    @pytest.mark.asyncio
    async def test_complete_questions_starts_session_with_enriched_details(self, mock_client, store):
        controller = await _at_visualize(mock_client, store)

        assert controller.step == WorkflowStep.visualize
        assert controller.framework_answers == ANSWERS
        assert controller.selected_framework == FrameworkType.driver_tree
        sent = mock_client.send.call_args.args[0]
        assert sent.input_context.url == "https://a.com"
        assert "- Primary Goal: Increase retention" in sent.input_context.product_details
        assert controller.engine.session_id == "s1"

    @pytest.mark.asyncio
    async def test_failed_start_stays_on_clarify(self, mock_client, store):
        controller = _controller(mock_client, store, TransportError("down"), waiting_metrics())
        await controller.start_analysis(URL_INPUT)

        with pytest.raises(TransportError):
            await controller.complete_questions(ANSWERS)
        assert controller.step == WorkflowStep.clarify
        assert controller.engine.status == OrchestrationStatus.error

        await controller.complete_questions(ANSWERS)
        assert controller.step == WorkflowStep.visualize

    @pytest.mark.asyncio
    async def test_full_workflow_reaches_results(self, mock_client, store):
        controller = await _at_visualize(
            mock_client, store,
            waiting_metrics(conversationTurns=[assistant("added m3")], metric_ids=("m3",)),
            waiting_taxonomy(),
            completed(),
        )

        await controller.submit_answer("add activation metrics")
        assert await controller.toggle_metric("m1") is False
        await controller.approve_metrics(custom_fields=[CustomField(id="f1", name="team_id")])
        assert controller.step == WorkflowStep.review
        approve_request = mock_client.send.call_args.args[0]
        assert approve_request.selection == ["m2", "m3"]

        await controller.approve_taxonomy()
        assert controller.step == WorkflowStep.results
        assert controller.engine.status == OrchestrationStatus.completed

    @pytest.mark.asyncio
    async def test_taxonomy_approval_without_completion_stays_on_review(self, mock_client, store):
        controller = await _at_visualize(
            mock_client, store, waiting_taxonomy(), waiting_taxonomy(events=("revised",)),
        )
        await controller.approve_metrics()
        await controller.approve_taxonomy()
        assert controller.step == WorkflowStep.review

    @pytest.mark.asyncio
    async def test_failed_metric_approval_stays_on_visualize(self, mock_client, store):
        controller = await _at_visualize(mock_client, store, TransportError("down"))
        with pytest.raises(TransportError):
            await controller.approve_metrics(["m1"])
        assert controller.step == WorkflowStep.visualize

    @pytest.mark.asyncio
    async def test_rejected_metric_approval_stays_on_visualize(self, mock_client, store):
        controller = await _at_visualize(mock_client, store, response(sessionId="s1", status="rejected"))
        await controller.approve_metrics(["m1"])
        assert controller.engine.status == OrchestrationStatus.rejected
        assert controller.step == WorkflowStep.visualize

        await controller.restart()
        assert controller.step == WorkflowStep.input

    @pytest.mark.asyncio
    async def test_reopened_metrics_checkpoint_stays_on_visualize(self, mock_client, store):
        controller = await _at_visualize(mock_client, store, waiting_metrics(metric_ids=("m1", "m3")))
        await controller.approve_metrics(["m1"])
        assert controller.step == WorkflowStep.visualize
        assert await controller.toggle_metric("m3") is False

    @pytest.mark.asyncio
    async def test_actions_on_wrong_step(self, mock_client, store):
        controller = _controller(mock_client, store)
        for action in (
            controller.complete_questions(ANSWERS),
            controller.submit_answer("hi"),
            controller.approve_metrics(["m1"]),
            controller.approve_taxonomy(),
            controller.reject(),
        ):
            with pytest.raises(ValidationError) as exc_info:
                await action
            assert exc_info.value.code == "InvalidStep"
        mock_client.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_toggle_unknown_metric(self, mock_client, store):
        controller = await _at_visualize(mock_client, store)
        with pytest.raises(ValidationError) as exc_info:
            await controller.toggle_metric("nope")
        assert exc_info.value.code == "UnknownMetric"

    @pytest.mark.asyncio
    async def test_existing_metrics_kept_before_generation(self, mock_client, store):
        controller = _controller(mock_client, store)
        imported = [ExistingMetric(id="e1", name="MRR", source="pasted")]
        await controller.set_existing_metrics(imported)
        assert controller.existing_metrics == imported


# ---------------------------------------------------------------------------
# Concurrency guard
# ---------------------------------------------------------------------------

class TestBusy:

    @pytest.mark.asyncio
    async def test_second_action_while_pending_is_refused(self, mock_client, store):
        controller = await _at_visualize(mock_client, store)
        release = asyncio.Event()

        async def slow_send(request):
            await release.wait()
            return waiting_metrics()

        mock_client.send.side_effect = slow_send
        pending = asyncio.create_task(controller.submit_answer("first"))
        await asyncio.sleep(0)
        assert controller.busy

        with pytest.raises(BusyError) as exc_info:
            await controller.submit_answer("second")
        assert exc_info.value.code == "ActionInProgress"
        with pytest.raises(BusyError):
            await controller.approve_metrics(["m1"])

        release.set()
        await pending
        assert not controller.busy
        assert [t.text for t in controller.engine.conversation] == ["first"]


# ---------------------------------------------------------------------------
# Reject / restart
# ---------------------------------------------------------------------------

class TestRejectAndRestart:

    @pytest.mark.asyncio
    async def test_reject_returns_to_input(self, mock_client, store):
        controller = await _at_visualize(mock_client, store, response(sessionId="s1", status="rejected"))
        await controller.save_progress()

        await controller.reject("User requested regeneration")

        sent = mock_client.send.call_args.args[0]
        assert sent.user_message == "User requested regeneration"
        assert controller.step == WorkflowStep.input
        assert controller.snapshot_id is None
        assert controller.engine.status == OrchestrationStatus.idle

    @pytest.mark.asyncio
    async def test_restart_discards_but_keeps_snapshot(self, mock_client, store):
        controller = await _at_visualize(mock_client, store)
        snapshot_id = await controller.save_progress("Keep me")

        await controller.restart()

        assert controller.step == WorkflowStep.input
        assert controller.snapshot_id is None
        assert controller.engine.session_id is None
        saved = await store.load("alice", snapshot_id)
        assert saved.current_step == WorkflowStep.visualize


# ---------------------------------------------------------------------------
# Save / autosave / resume
# ---------------------------------------------------------------------------

class TestPersistence:

    @pytest.mark.asyncio
    async def test_no_autosave_before_first_save(self, mock_client, store):
        await _at_visualize(mock_client, store)
        assert await store.list("alice") == []

    @pytest.mark.asyncio
    async def test_save_progress_then_autosave(self, mock_client, store):
        controller = await _at_visualize(mock_client, store, waiting_taxonomy())
        snapshot_id = await controller.save_progress("Team chat")

        saved = await store.load("alice", snapshot_id)
        assert saved.name == "Team chat"
        assert saved.status == SnapshotStatus.in_progress
        assert saved.orchestration_session_id == "s1"

        await controller.approve_metrics(["m2"])
        saved = await store.load("alice", snapshot_id)
        assert saved.current_step == WorkflowStep.review
        assert saved.approval_type == ApprovalType.taxonomy
        assert saved.selected_metric_ids == ["m2"]

    @pytest.mark.asyncio
    async def test_autosave_failure_is_swallowed(self, mock_client, store):
        controller = await _at_visualize(mock_client, store, waiting_metrics())
        await controller.save_progress()
        controller.store = AsyncMock(wraps=store)
        controller.store.save.side_effect = PersistenceError("db down")

        await controller.submit_answer("still works")

        assert [t.text for t in controller.engine.conversation] == ["still works"]

    @pytest.mark.asyncio
    async def test_explicit_save_failure_is_surfaced(self, mock_client, store):
        controller = await _at_visualize(mock_client, store)
        controller.store = AsyncMock()
        controller.store.save.side_effect = PersistenceError("db down")
        with pytest.raises(PersistenceError):
            await controller.save_progress()
        assert controller.snapshot_id is None

    @pytest.mark.asyncio
    async def test_resume_restores_state_without_replay(self, mock_client, store):
        original = _controller(
            mock_client, store,
            waiting_metrics(
                metric_ids=("m1", "m2"),
                frameworkRecommendation={
                    "recommendedFramework": "conversion_funnel",
                    "confidence": 0.9,
                    "reasoning": "Checkout flow",
                },
                clarifyingQuestions=[{"id": "q1", "question": "Who pays?", "type": "text"}],
            ),
            waiting_taxonomy(fallbackReason="default events used"),
        )
        await original.start_analysis(URL_INPUT)
        await original.complete_questions(ANSWERS, FrameworkType.conversion_funnel)
        await original.approve_metrics(["m1"])
        snapshot_id = await original.save_progress("Resumable")
        calls_before = mock_client.send.await_count

        resumed = WorkflowController(mock_client, store, "alice")
        await resumed.resume_session(snapshot_id)

        assert mock_client.send.await_count == calls_before
        assert resumed.step == WorkflowStep.review
        assert resumed.snapshot_id == snapshot_id
        assert resumed.name == "Resumable"
        assert resumed.framework_answers == ANSWERS
        state = resumed.engine.state()
        assert state == original.engine.state()
        assert state.framework_recommendation.recommended_framework == FrameworkType.conversion_funnel
        assert [q.id for q in state.clarifying_questions] == ["q1"]
        assert state.fallback_reason == "default events used"

    @pytest.mark.asyncio
    async def test_resume_keeps_new_metric_highlights(self, mock_client, store):
        original = await _at_visualize(mock_client, store, waiting_metrics(metric_ids=("m1", "m3")))
        await original.submit_answer("one more")
        snapshot_id = await original.save_progress()

        resumed = WorkflowController(mock_client, store, "alice")
        await resumed.resume_session(snapshot_id)
        assert resumed.engine.new_metric_ids == ["m3"]
        assert resumed.engine.state() == original.engine.state()

    @pytest.mark.asyncio
    async def test_resumed_session_continues(self, mock_client, store):
        original = await _at_visualize(mock_client, store, waiting_taxonomy(), completed())
        await original.approve_metrics(["m1"])
        snapshot_id = await original.save_progress()

        resumed = WorkflowController(mock_client, store, "alice")
        await resumed.resume_session(snapshot_id)
        await resumed.approve_taxonomy()
        assert resumed.step == WorkflowStep.results

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner,error", [("alice", NotFound), ("bob", Forbidden)])
    async def test_failed_resume_leaves_workflow_untouched(self, mock_client, store, owner, error):
        saved = await _at_visualize(mock_client, store)
        snapshot_id = await saved.save_progress()
        target = "missing" if error is NotFound else snapshot_id

        controller = _controller(mock_client, store, owner_id=owner)
        await controller.start_analysis(URL_INPUT)
        with pytest.raises(error):
            await controller.resume_session(target)
        assert controller.step == WorkflowStep.clarify
        assert controller.snapshot_id is None

    @pytest.mark.asyncio
    async def test_dump_and_rebuild_state(self, mock_client, store):
        controller = await _at_visualize(mock_client, store)
        rebuilt = WorkflowController.from_state(controller.dump_state(), mock_client, store)
        assert rebuilt.view() == controller.view()
