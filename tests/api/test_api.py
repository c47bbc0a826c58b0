"""
API Tests

Tests cover:
- Health, metrics and catalog endpoints
- Workflow CRUD, graph save and clone
- Run start / inspect / approve / cancel
- Trigger CRUD
- Error responses ({"error", "status_code"}) and status codes
- Request ID header
"""

import pytest
from fastapi.testclient import TestClient

from agencyflow.api.main import create_app
from agencyflow.core.repository import Repository
from agencyflow.models import WorkflowRun

from conftest import RecordingRunLauncher, create_agency, create_target_model, create_workflow, make_settings


PIPELINE_GRAPH = {
    "nodes": [
        {"key": "gen", "node_type": "generate_image", "config": {"model": "qwen", "count": 2}},
        {"key": "pick", "node_type": "pick"},
        {"key": "caption", "node_type": "ai_caption", "config": {"tone": "playful"}},
        {"key": "save", "node_type": "save_to_gallery", "position": {"x": 600, "y": 80}},
    ],
    "edges": [
        {"source": "gen", "source_port": "images", "target": "pick", "target_port": "images"},
        {"source": "pick", "source_port": "image", "target": "caption", "target_port": "media"},
        {"source": "caption", "source_port": "media", "target": "save", "target_port": "media"},
        {"source": "caption", "source_port": "text", "target": "save", "target_port": "caption"},
    ],
}


@pytest.fixture
def client(session_factory):
    app = create_app(make_settings(), session_factory)
    with TestClient(app) as test_client:
        test_client.app.state.launcher = RecordingRunLauncher()
        yield test_client


@pytest.fixture
def launched(client):
    return client.app.state.launcher.launched


def _create_workflow(client, agency, model, graph=PIPELINE_GRAPH):
    response = client.post("/workflows", json={"agency_id": agency.id, "name": "Daily post", "model_id": model.id})
    assert response.status_code == 201
    workflow_id = response.json()["id"]
    if graph is not None:
        assert client.put(f"/workflows/{workflow_id}/graph", json=graph).status_code == 200
    return workflow_id


# ============================================================================
# HEALTH & CATALOG
# ============================================================================

@pytest.mark.unit
def test_root_and_health(client):
    assert client.get("/").json()["name"] == "AgencyFlow API"
    assert client.get("/health").json()["status"] == "healthy"


@pytest.mark.unit
def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.unit
def test_metrics_healthy(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    body = response.json()
    assert body["healthy"] is True
    assert body["metrics"]["engine"]["wavespeed_queue"]["name"] == "wavespeed"


@pytest.mark.unit
def test_node_types_and_template_variables(client):
    catalog = client.get("/node-types").json()
    variables = client.get("/template-variables").json()["variables"]

    kinds = [node["kind"] for category in catalog["categories"].values() for node in category["nodes"]]
    assert len(kinds) == 8
    assert "{{model.name}}" in [variable["key"] for variable in variables]


# ============================================================================
# WORKFLOWS
# ============================================================================

@pytest.mark.unit
def test_workflow_lifecycle(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)

    detail = client.get(f"/workflows/{workflow_id}").json()
    assert [node["node_type"] for node in detail["nodes"]] == ["generate_image", "pick", "ai_caption", "save_to_gallery"]
    assert detail["nodes"][3]["position_x"] == 600
    assert len(detail["edges"]) == 4
    assert detail["is_template"] is False

    updated = client.put(f"/workflows/{workflow_id}", json={"status": "active"}).json()
    assert updated["status"] == "active"
    assert updated["name"] == "Daily post"

    listing = client.get("/workflows", params={"agency_id": agency.id, "status": "active"}).json()
    assert listing["total"] == 1

    assert client.delete(f"/workflows/{workflow_id}").json() == {"message": f"Workflow {workflow_id} deleted"}
    assert client.get(f"/workflows/{workflow_id}").status_code == 404


@pytest.mark.unit
def test_invalid_graph_returns_400_with_node_id(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model, graph=None)
    graph = {"nodes": [{"key": "gen", "node_type": "generate_image", "config": {"count": 10}}], "edges": []}

    response = client.put(f"/workflows/{workflow_id}/graph", json=graph)

    assert response.status_code == 400
    assert response.json()["node_id"] == "gen"
    assert response.json()["status_code"] == 400


@pytest.mark.unit
def test_cyclic_graph_is_rejected(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model, graph=None)
    graph = {
        "nodes": [{"key": "a", "node_type": "review"}, {"key": "b", "node_type": "review"}],
        "edges": [
            {"source": "a", "source_port": "media", "target": "b", "target_port": "media"},
            {"source": "b", "source_port": "media", "target": "a", "target_port": "media"},
        ],
    }

    response = client.put(f"/workflows/{workflow_id}/graph", json=graph)

    assert response.status_code == 400
    assert "cycle" in response.json()["error"]


@pytest.mark.unit
def test_clone_as_template(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)

    response = client.post(f"/workflows/{workflow_id}/clone", json={"as_template": True})

    assert response.status_code == 201
    clone = response.json()
    assert clone["is_template"] is True
    assert clone["source_workflow_id"] == workflow_id
    assert len(clone["nodes"]) == 4


@pytest.mark.unit
def test_unknown_workflow_is_404(client):
    response = client.get("/workflows/999")

    assert response.status_code == 404
    assert response.json() == {"error": "Workflow 999 not found", "status_code": 404}


@pytest.mark.unit
def test_missing_field_is_422(client):
    assert client.post("/workflows", json={"name": "no agency"}).status_code == 422


# ============================================================================
# RUNS
# ============================================================================

@pytest.mark.unit
def test_start_run_is_accepted_and_launched(client, launched, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)

    response = client.post(f"/workflows/{workflow_id}/runs", json={"started_by": "ops@velvet"})

    assert response.status_code == 202
    run = response.json()
    assert run["status"] == "running"
    assert launched == [run["id"]]

    detail = client.get(f"/runs/{run['id']}").json()
    assert {result["status"] for result in detail["node_results"]} == {"pending"}
    assert len(detail["node_results"]) == 4

    assert client.get(f"/workflows/{workflow_id}/runs").json()["total"] == 1


@pytest.mark.unit
def test_graph_edit_during_active_run_is_400(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)
    client.post(f"/workflows/{workflow_id}/runs")

    response = client.put(f"/workflows/{workflow_id}/graph", json=PIPELINE_GRAPH)

    assert response.status_code == 400
    assert "active run" in response.json()["error"]


@pytest.mark.unit
def test_start_run_without_credits_is_402(client, db_session):
    agency = create_agency(db_session, credit_pool=0, slug="broke")
    model = create_target_model(db_session, agency)
    workflow_id = _create_workflow(client, agency, model)

    response = client.post(f"/workflows/{workflow_id}/runs")

    assert response.status_code == 402


@pytest.mark.unit
def test_start_template_is_400(client, db_session, agency):
    template, _ = create_workflow(db_session, agency, None, [("e", "export", {})])

    response = client.post(f"/workflows/{template.id}/runs")

    assert response.status_code == 400
    assert "Templates cannot be run" in response.json()["error"]


@pytest.mark.unit
def test_approve_pick_and_cancel(client, launched, db_session, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)
    run_id = client.post(f"/workflows/{workflow_id}/runs").json()["id"]
    results = Repository(db_session).node_results_by_node(run_id)
    gen_id, pick_id = sorted(results)[:2]

    # Not paused yet
    assert client.post(f"/runs/{run_id}/nodes/{pick_id}/approve", json={"selected_index": 0}).status_code == 400

    results[gen_id].status = "completed"
    results[pick_id].status = "waiting_for_review"
    results[pick_id].output = {"images": ["a.png", "b.png"]}
    db_session.get(WorkflowRun, run_id).status = "waiting_for_review"
    db_session.commit()

    bad = client.post(f"/runs/{run_id}/nodes/{pick_id}/approve", json={"selected_index": "first"})
    assert bad.status_code == 400
    assert bad.json()["error"] == "selected_index must be an integer"

    approved = client.post(f"/runs/{run_id}/nodes/{pick_id}/approve", json={"selected_index": 1})
    assert approved.status_code == 200
    assert approved.json()["status"] == "running"
    assert launched == [run_id, run_id]

    pick_result = next(r for r in client.get(f"/runs/{run_id}").json()["node_results"] if r["node_id"] == pick_id)
    assert pick_result["output"] == {"image": "b.png"}

    cancelled = client.post(f"/runs/{run_id}/cancel")
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/runs/{run_id}/cancel").status_code == 400


@pytest.mark.unit
def test_unknown_run_is_404(client):
    assert client.get("/runs/4040").status_code == 404


# ============================================================================
# TRIGGERS
# ============================================================================

@pytest.mark.unit
def test_trigger_crud(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)
    schedule = {"frequency": "specific_days", "time": "18:00", "days": [5, 1], "timezone": "America/New_York"}

    created = client.post(f"/workflows/{workflow_id}/triggers", json={"trigger_type": "scheduled", "schedule_config": schedule})
    assert created.status_code == 201
    trigger = created.json()
    assert trigger["schedule_config"]["days"] == [1, 5]
    assert trigger["next_trigger_at"] is not None

    disabled = client.put(f"/triggers/{trigger['id']}", json={"enabled": False}).json()
    assert disabled["enabled"] is False
    assert disabled["next_trigger_at"] is None

    assert len(client.get(f"/workflows/{workflow_id}/triggers").json()) == 1
    assert client.delete(f"/triggers/{trigger['id']}").status_code == 200
    assert client.get(f"/workflows/{workflow_id}/triggers").json() == []


@pytest.mark.unit
def test_invalid_schedule_is_400(client, agency, target_model):
    workflow_id = _create_workflow(client, agency, target_model)

    response = client.post(
        f"/workflows/{workflow_id}/triggers",
        json={"trigger_type": "scheduled", "schedule_config": {"frequency": "daily", "time": "7pm"}},
    )

    assert response.status_code == 400
    assert "HH:MM" in response.json()["error"]
