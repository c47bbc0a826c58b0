"""
Unit Tests for WorkflowRunner

Tests cover:
- Sequential execution in topological order
- Gate nodes pausing the run, approval resuming it
- Resume skipping already-completed nodes
- Node claims: stale nodes re-run, live ones and racing runners do not
- Cycle detection at run time
- Node failure and insufficient credits
- Cancellation while a node is executing
- Template variables resolved before execution
"""

import asyncio
from datetime import timedelta

import pytest

from agencyflow.core import executors
from agencyflow.core.engine import WorkflowRunner, collect_inputs
from agencyflow.core.exceptions import NodeExecutionError
from agencyflow.core.graph import EdgeRef
from agencyflow.core.repository import Repository, utcnow
from agencyflow.core.runs import RunService
from agencyflow.models import Agency, GalleryItem, NodeResult, WorkflowRun

from conftest import create_agency, create_target_model, create_workflow


@pytest.fixture
def calls(monkeypatch):
    """Replace the generation executors with fakes that record their calls."""
    recorded = []

    async def fake_generate_image(config, inputs, ctx):
        recorded.append(("generate_image", ctx.node_id, config.prompt))
        await asyncio.sleep(0)
        return {"images": ["https://cdn.test/a.png", "https://cdn.test/b.png"]}

    async def fake_generate_video(config, inputs, ctx):
        recorded.append(("generate_video", ctx.node_id, config.prompt))
        return {"video": "https://cdn.test/clip.mp4"}

    async def fake_caption(config, inputs, ctx):
        recorded.append(("ai_caption", ctx.node_id, inputs.get("media")))
        return {"text": f"Golden hour vibes ({config.tone})", "media": inputs["media"]}

    monkeypatch.setattr(executors, "execute_generate_image", fake_generate_image)
    monkeypatch.setattr(executors, "execute_generate_video", fake_generate_video)
    monkeypatch.setattr(executors, "execute_ai_caption", fake_caption)
    return recorded


def _results(session, run_id):
    session.expire_all()
    return Repository(session).node_results_by_node(run_id)


def _start(session, workflow):
    run = Repository(session).create_run(workflow, started_by="tests")
    session.commit()
    return run.id


# ============================================================================
# GATES AND APPROVAL
# ============================================================================

@pytest.mark.asyncio
async def test_run_pauses_at_pick_gate(db_session, session_factory, services, content_pipeline, calls):
    workflow, ids = content_pipeline
    run_id = _start(db_session, workflow)

    status = await WorkflowRunner(session_factory, services).run_workflow(run_id)

    assert status == "waiting_for_review"
    results = _results(db_session, run_id)
    assert results[ids["gen"]].status == "completed"
    assert results[ids["gen"]].credits_used == 10
    assert results[ids["pick"]].status == "waiting_for_review"
    assert results[ids["pick"]].output == {"images": ["https://cdn.test/a.png", "https://cdn.test/b.png"]}
    assert results[ids["caption"]].status == "pending"
    assert [call[0] for call in calls] == ["generate_image"]

    run = db_session.get(WorkflowRun, run_id)
    assert run.status == "waiting_for_review"
    assert run.credits_used == 10


@pytest.mark.asyncio
async def test_approve_pick_resumes_with_selected_image(
    db_session, session_factory, services, content_pipeline, calls, launcher
):
    workflow, ids = content_pipeline
    run_id = _start(db_session, workflow)
    runner = WorkflowRunner(session_factory, services)
    await runner.run_workflow(run_id)

    run = RunService(db_session, launcher).approve(run_id, ids["pick"], selected_index=1)

    assert run.status == "running"
    assert launcher.launched == [run_id]
    assert _results(db_session, run_id)[ids["pick"]].output == {"image": "https://cdn.test/b.png"}

    status = await runner.run_workflow(run_id)

    assert status == "completed"
    results = _results(db_session, run_id)
    assert all(result.status == "completed" for result in results.values())
    # The generator ran only once across both runner calls
    assert [call[0] for call in calls] == ["generate_image", "ai_caption"]
    assert calls[1][2] == "https://cdn.test/b.png"

    run = db_session.get(WorkflowRun, run_id)
    assert run.credits_used == 12
    assert run.completed_at is not None

    item = db_session.query(GalleryItem).filter(GalleryItem.run_id == run_id).one()
    assert item.media_ref == "https://cdn.test/b.png"
    assert item.caption == "Golden hour vibes (playful)"
    assert item.tags == ["daily"]
    assert db_session.get(Agency, workflow.agency_id).credit_pool == 1000 - 12


@pytest.mark.asyncio
async def test_review_gate_blocks_downstream_until_approved(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [
            ("vid", "generate_video", {"model": "wan", "prompt": "walk on the beach"}),
            ("review", "review", {}),
            ("save", "save_to_gallery", {}),
        ],
        [("vid", "video", "review", "media"), ("review", "media", "save", "media")],
    )
    run_id = _start(db_session, workflow)
    runner = WorkflowRunner(session_factory, services)

    assert await runner.run_workflow(run_id) == "waiting_for_review"
    # Calling the runner again while paused does nothing
    assert await runner.run_workflow(run_id) == "waiting_for_review"
    assert _results(db_session, run_id)[ids["save"]].status == "pending"

    RunService(db_session).approve(run_id, ids["review"])
    assert await runner.run_workflow(run_id) == "completed"

    item = db_session.query(GalleryItem).filter(GalleryItem.run_id == run_id).one()
    assert item.media_type == "video"
    assert db_session.get(WorkflowRun, run_id).credits_used == 40


# ============================================================================
# RESUME
# ============================================================================

@pytest.mark.asyncio
async def test_resume_only_executes_pending_nodes_in_order(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [
            ("vid", "generate_video", {"model": "kling", "prompt": "spin"}),
            ("caption", "ai_caption", {"tone": "casual"}),
            ("export", "export", {}),
        ],
        [("vid", "video", "caption", "media"), ("caption", "text", "export", "caption")],
    )
    run_id = _start(db_session, workflow)

    # Simulate a run interrupted after its first node
    result = Repository(db_session).get_node_result(run_id, ids["vid"])
    result.status = "completed"
    result.output = {"video": "https://cdn.test/earlier.mp4"}
    result.credits_used = 50
    db_session.commit()

    status = await WorkflowRunner(session_factory, services).run_workflow(run_id)

    assert status == "completed"
    assert [call[0] for call in calls] == ["ai_caption"]
    assert calls[0][2] == "https://cdn.test/earlier.mp4"

    results = _results(db_session, run_id)
    assert results[ids["vid"]].output == {"video": "https://cdn.test/earlier.mp4"}
    assert results[ids["caption"]].status == "completed"
    assert results[ids["export"]].status == "completed"


@pytest.mark.asyncio
async def test_resume_reexecutes_node_left_running(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [("vid", "generate_video", {"model": "veo"})],
    )
    run_id = _start(db_session, workflow)
    # Left behind by a runner that died two hours ago
    result = Repository(db_session).get_node_result(run_id, ids["vid"])
    result.status = "running"
    result.started_at = utcnow() - timedelta(hours=2)
    db_session.commit()

    assert await WorkflowRunner(session_factory, services).run_workflow(run_id) == "completed"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_node_held_by_live_runner_is_not_reexecuted(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [("vid", "generate_video", {"model": "veo"})],
    )
    run_id = _start(db_session, workflow)
    result = Repository(db_session).get_node_result(run_id, ids["vid"])
    result.status = "running"
    result.started_at = utcnow() - timedelta(minutes=5)
    db_session.commit()

    status = await WorkflowRunner(session_factory, services, node_claim_timeout=3600).run_workflow(run_id)

    assert status == "running"
    assert calls == []
    assert _results(db_session, run_id)[ids["vid"]].status == "running"


@pytest.mark.asyncio
async def test_two_runners_on_one_run_call_the_backend_once(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [("gen", "generate_image", {"model": "seedream", "prompt": "beach"})],
    )
    run_id = _start(db_session, workflow)
    runner = WorkflowRunner(session_factory, services)

    statuses = await asyncio.gather(runner.run_workflow(run_id), runner.run_workflow(run_id))

    assert sorted(statuses) == ["completed", "running"]
    assert [call[0] for call in calls] == ["generate_image"]
    db_session.expire_all()
    assert db_session.get(WorkflowRun, run_id).credits_used == 10
    assert db_session.get(Agency, agency.id).credit_pool == 990


# ============================================================================
# FAILURES
# ============================================================================

@pytest.mark.asyncio
async def test_cycle_fails_run_without_touching_node_results(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [("a", "review", {}), ("b", "review", {})],
        [("a", "media", "b", "media"), ("b", "media", "a", "media")],
    )
    run_id = _start(db_session, workflow)

    status = await WorkflowRunner(session_factory, services).run_workflow(run_id)

    assert status == "failed"
    run = db_session.get(WorkflowRun, run_id)
    db_session.refresh(run)
    assert "cycle" in run.error
    for result in _results(db_session, run_id).values():
        assert result.status == "pending"
        assert result.started_at is None
        assert result.output is None


@pytest.mark.asyncio
async def test_node_failure_fails_run_and_keeps_spent_credits(
    db_session, session_factory, services, content_pipeline, calls, monkeypatch
):
    async def broken_caption(config, inputs, ctx):
        raise NodeExecutionError("No response from AI model")

    monkeypatch.setattr(executors, "execute_ai_caption", broken_caption)
    workflow, ids = content_pipeline
    run_id = _start(db_session, workflow)
    runner = WorkflowRunner(session_factory, services)
    await runner.run_workflow(run_id)
    RunService(db_session).approve(run_id, ids["pick"], selected_index=0)

    status = await runner.run_workflow(run_id)

    assert status == "failed"
    run = db_session.get(WorkflowRun, run_id)
    db_session.refresh(run)
    assert run.failed_node_id == ids["caption"]
    assert run.error == "No response from AI model"
    assert run.credits_used == 10

    results = _results(db_session, run_id)
    assert results[ids["caption"]].status == "failed"
    assert results[ids["caption"]].error == "No response from AI model"
    assert results[ids["save"]].status == "pending"
    assert db_session.get(Agency, workflow.agency_id).credit_pool == 990


@pytest.mark.asyncio
async def test_invalid_node_config_fails_node(db_session, session_factory, services, agency, target_model, calls):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [("gen", "generate_image", {"model": "qwen", "count": 12})],
    )
    run_id = _start(db_session, workflow)

    assert await WorkflowRunner(session_factory, services).run_workflow(run_id) == "failed"
    result = _results(db_session, run_id)[ids["gen"]]
    assert result.status == "failed"
    assert result.error.startswith("Invalid node config (count)")
    assert calls == []


@pytest.mark.asyncio
async def test_insufficient_credits_fails_node_without_charging(session_factory, services, db_session, calls):
    agency = create_agency(db_session, credit_pool=5)
    model = create_target_model(db_session, agency)
    workflow, ids = create_workflow(
        db_session, agency, model,
        [("gen", "generate_image", {"model": "seedream", "count": 1})],
    )
    run_id = _start(db_session, workflow)

    status = await WorkflowRunner(session_factory, services).run_workflow(run_id)

    assert status == "failed"
    result = _results(db_session, run_id)[ids["gen"]]
    assert result.status == "failed"
    assert result.credits_used == 0
    assert "Insufficient credits" in result.error
    assert db_session.get(Agency, agency.id).credit_pool == 5


@pytest.mark.asyncio
async def test_concurrent_runs_cannot_overspend(session_factory, services, db_session, calls):
    agency = create_agency(db_session, credit_pool=10)
    model = create_target_model(db_session, agency)
    workflow, ids = create_workflow(
        db_session, agency, model,
        [("gen", "generate_image", {"model": "qwen", "count": 2})],
    )
    first, second = _start(db_session, workflow), _start(db_session, workflow)
    runner = WorkflowRunner(session_factory, services)

    statuses = await asyncio.gather(runner.run_workflow(first), runner.run_workflow(second))

    assert sorted(statuses) == ["completed", "failed"]
    db_session.expire_all()
    assert db_session.get(Agency, agency.id).credit_pool == 0
    assert db_session.get(Agency, agency.id).credits_used_this_cycle == 10


# ============================================================================
# CANCELLATION
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_during_node_keeps_output_and_stops_run(
    db_session, session_factory, services, agency, target_model, monkeypatch
):
    workflow, ids = create_workflow(
        db_session, agency, target_model,
        [("vid", "generate_video", {"model": "kling"}), ("export", "export", {})],
        [("vid", "video", "export", "media")],
    )
    run_id = _start(db_session, workflow)

    async def video_cancelled_midway(config, inputs, ctx):
        other = session_factory()
        try:
            RunService(other).cancel(ctx.run_id)
        finally:
            other.close()
        return {"video": "https://cdn.test/late.mp4"}

    monkeypatch.setattr(executors, "execute_generate_video", video_cancelled_midway)

    status = await WorkflowRunner(session_factory, services).run_workflow(run_id)

    assert status == "cancelled"
    results = _results(db_session, run_id)
    assert results[ids["vid"]].status == "skipped"
    assert results[ids["vid"]].output == {"video": "https://cdn.test/late.mp4"}
    assert results[ids["export"]].status == "skipped"

    run = db_session.get(WorkflowRun, run_id)
    assert run.status == "cancelled"
    assert run.credits_used == 0
    assert db_session.get(Agency, agency.id).credit_pool == 1000


@pytest.mark.asyncio
async def test_runner_leaves_non_running_runs_alone(db_session, session_factory, services, content_pipeline, calls):
    workflow, _ = content_pipeline
    run_id = _start(db_session, workflow)
    RunService(db_session).cancel(run_id)

    runner = WorkflowRunner(session_factory, services)

    assert await runner.run_workflow(run_id) == "cancelled"
    assert await runner.run_workflow(999) is None
    assert calls == []


# ============================================================================
# INPUTS AND TEMPLATES
# ============================================================================

@pytest.mark.asyncio
async def test_template_variables_resolved_before_execution(db_session, session_factory, services, content_pipeline, calls):
    workflow, _ = content_pipeline
    run_id = _start(db_session, workflow)

    await WorkflowRunner(session_factory, services).run_workflow(run_id)

    assert calls[0][2] == "Luna at golden hour"
    # Stored config is untouched
    assert workflow.nodes[0].config["prompt"] == "{{model.name}} at golden hour"


@pytest.mark.unit
def test_collect_inputs_maps_upstream_ports():
    results = {
        1: NodeResult(node_id=1, output={"text": "hello", "media": "https://cdn.test/x.png"}),
        2: NodeResult(node_id=2, output=None),
    }
    edges = [
        EdgeRef(1, "text", 3, "caption"),
        EdgeRef(1, "media", 3, "media"),
        EdgeRef(2, "video", 3, "other"),
        EdgeRef(1, "text", 4, "caption"),
    ]

    assert collect_inputs(3, edges, results) == {"caption": "hello", "media": "https://cdn.test/x.png"}
