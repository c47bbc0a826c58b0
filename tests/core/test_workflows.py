"""
Unit Tests for WorkflowService

Tests cover:
- Create / update / delete
- Graph save with validation and atomic replacement, refused while runs are active
- Cloning onto a model and as a template
"""

import pytest

from agencyflow.core.exceptions import PortIncompatibilityError, ResourceNotFoundError, RunStateError, WorkflowValidationError
from agencyflow.core.repository import Repository
from agencyflow.core.runs import RunService
from agencyflow.core.workflows import WorkflowService
from agencyflow.models import Workflow, WorkflowNode

from conftest import create_agency, create_target_model


GRAPH_NODES = [
    {"key": "gen", "node_type": "generate_image", "config": {"model": "qwen", "count": 2}, "position": {"x": 0, "y": 0}},
    {"key": "pick", "node_type": "pick", "position": {"x": 240, "y": 0}},
    {"key": "save", "node_type": "save_to_gallery", "config": {"tags": ["daily"]}},
]
GRAPH_EDGES = [
    {"source": "gen", "source_port": "images", "target": "pick", "target_port": "images"},
    {"source": "pick", "source_port": "image", "target": "save", "target_port": "media"},
]


# ============================================================================
# CRUD
# ============================================================================

@pytest.mark.unit
def test_create_workflow_starts_as_draft(db_session, agency, target_model):
    workflow = WorkflowService(db_session).create_workflow(
        agency.id, "Morning set", description="3 selfies", model_id=target_model.id, created_by="ops@velvet"
    )

    assert workflow.status == "draft"
    assert workflow.is_template is False
    assert workflow.created_by == "ops@velvet"


@pytest.mark.unit
def test_create_workflow_rejects_model_of_other_agency(db_session, agency):
    other = create_agency(db_session, slug="rival")
    foreign_model = create_target_model(db_session, other, name="Nova")

    with pytest.raises(WorkflowValidationError, match="does not belong"):
        WorkflowService(db_session).create_workflow(agency.id, "x", model_id=foreign_model.id)


@pytest.mark.unit
def test_update_workflow(db_session, agency):
    service = WorkflowService(db_session)
    workflow = service.create_workflow(agency.id, "Draft")

    updated = service.update_workflow(workflow.id, name="Live", status="active")

    assert (updated.name, updated.status) == ("Live", "active")
    with pytest.raises(WorkflowValidationError, match="Invalid status"):
        service.update_workflow(workflow.id, status="deleted")


@pytest.mark.unit
def test_delete_workflow_removes_graph(db_session, content_pipeline):
    workflow, _ = content_pipeline
    workflow_id = workflow.id
    service = WorkflowService(db_session)

    service.delete_workflow(workflow_id)

    assert db_session.get(Workflow, workflow_id) is None
    assert db_session.query(WorkflowNode).filter(WorkflowNode.workflow_id == workflow_id).count() == 0
    with pytest.raises(ResourceNotFoundError):
        service.get_workflow(workflow_id)


@pytest.mark.unit
def test_list_workflows_filters(db_session, agency, target_model):
    service = WorkflowService(db_session)
    service.create_workflow(agency.id, "a", model_id=target_model.id)
    active = service.create_workflow(agency.id, "b", model_id=target_model.id)
    service.update_workflow(active.id, status="active")

    assert len(service.list_workflows(agency_id=agency.id)) == 2
    assert [w.name for w in service.list_workflows(status="active")] == ["b"]
    assert service.list_workflows(agency_id=agency.id + 100) == []


# ============================================================================
# GRAPH SAVE
# ============================================================================

@pytest.mark.unit
def test_save_graph_replaces_nodes_and_edges(db_session, content_pipeline):
    workflow, _ = content_pipeline

    saved = WorkflowService(db_session).save_graph(workflow.id, GRAPH_NODES, GRAPH_EDGES)

    assert [node.node_type for node in saved.nodes] == ["generate_image", "pick", "save_to_gallery"]
    assert saved.nodes[1].position_x == 240
    assert len(saved.edges) == 2
    assert saved.edges[0].source_node_id == saved.nodes[0].id


@pytest.mark.unit
def test_invalid_graph_leaves_existing_graph_untouched(db_session, content_pipeline):
    workflow, ids = content_pipeline
    bad_edges = [{"source": "gen", "source_port": "images", "target": "save", "target_port": "media"}]

    with pytest.raises(PortIncompatibilityError):
        WorkflowService(db_session).save_graph(workflow.id, GRAPH_NODES, bad_edges)

    assert sorted(node.id for node in workflow.nodes) == sorted(ids.values())


@pytest.mark.unit
def test_save_graph_refused_while_a_run_is_active(db_session, content_pipeline, launcher):
    workflow, ids = content_pipeline
    run = Repository(db_session).create_run(workflow)
    db_session.commit()
    service = WorkflowService(db_session)

    with pytest.raises(RunStateError, match="1 active run"):
        service.save_graph(workflow.id, GRAPH_NODES, GRAPH_EDGES)

    db_session.rollback()
    assert sorted(node.id for node in service.get_workflow(workflow.id).nodes) == sorted(ids.values())

    RunService(db_session, launcher).cancel(run.id)
    saved = service.save_graph(workflow.id, GRAPH_NODES, GRAPH_EDGES)
    assert len(saved.nodes) == 3


# ============================================================================
# CLONE
# ============================================================================

@pytest.mark.unit
def test_clone_onto_model_copies_graph(db_session, agency, content_pipeline):
    workflow, ids = content_pipeline
    mia = create_target_model(db_session, agency, name="Mia")

    clone = WorkflowService(db_session).clone_workflow(workflow.id, target_model_id=mia.id, created_by="ops")

    assert clone.id != workflow.id
    assert clone.model_id == mia.id
    assert clone.source_workflow_id == workflow.id
    assert clone.name == "Daily post (copy)"
    assert clone.status == "draft"
    assert [n.node_type for n in clone.nodes] == [n.node_type for n in workflow.nodes]
    assert not {n.id for n in clone.nodes} & set(ids.values())
    clone_node_ids = {n.id for n in clone.nodes}
    assert all(e.source_node_id in clone_node_ids and e.target_node_id in clone_node_ids for e in clone.edges)
    assert len(clone.edges) == len(workflow.edges)


@pytest.mark.unit
def test_clone_as_template_drops_model(db_session, content_pipeline, target_model):
    workflow, _ = content_pipeline

    template = WorkflowService(db_session).clone_workflow(workflow.id, target_model_id=target_model.id, as_template=True)

    assert template.is_template is True
    assert template.model_id is None
