"""
Workflow management: CRUD, graph save and cloning.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..models import Workflow, WorkflowEdge, WorkflowNode
from ..models.workflow import WORKFLOW_STATUSES
from .exceptions import RunStateError, WorkflowValidationError
from .graph import validate_graph
from .repository import Repository, utcnow

logger = logging.getLogger(__name__)


class WorkflowService:

    def __init__(self, session: Session):
        self.session = session
        self.repo = Repository(session)

    def _check_model(self, agency_id: int, model_id: Optional[int]) -> None:
        if model_id is None:
            return
        model = self.repo.get_target_model(model_id)
        if model.agency_id != agency_id:
            raise WorkflowValidationError(f"Model {model_id} does not belong to agency {agency_id}")

    def create_workflow(self, agency_id: int, name: str, description: Optional[str] = None,
                        model_id: Optional[int] = None, created_by: Optional[str] = None) -> Workflow:
        self.repo.get_agency(agency_id)
        self._check_model(agency_id, model_id)

        workflow = Workflow(
            agency_id=agency_id,
            model_id=model_id,
            name=name,
            description=description,
            status="draft",
            created_by=created_by,
        )
        self.session.add(workflow)
        self.session.commit()
        logger.info(f"Created workflow {workflow.id} ('{name}')", extra={"agency_id": agency_id})
        return workflow

    def update_workflow(self, workflow_id: int, **changes: Any) -> Workflow:
        workflow = self.repo.get_workflow(workflow_id)

        if "status" in changes and changes["status"] not in WORKFLOW_STATUSES:
            raise WorkflowValidationError(
                f"Invalid status '{changes['status']}'. Must be one of: {', '.join(WORKFLOW_STATUSES)}"
            )
        if "model_id" in changes:
            self._check_model(workflow.agency_id, changes["model_id"])

        for field in ("name", "description", "status", "model_id"):
            if field in changes:
                setattr(workflow, field, changes[field])

        workflow.updated_at = utcnow()
        self.session.commit()
        return workflow

    def delete_workflow(self, workflow_id: int) -> None:
        workflow = self.repo.get_workflow(workflow_id)
        self.session.delete(workflow)
        self.session.commit()
        logger.info(f"Deleted workflow {workflow_id}")

    def save_graph(self, workflow_id: int, nodes: Sequence[Dict[str, Any]],
                   edges: Sequence[Dict[str, Any]]) -> Workflow:
        """
        Validate and atomically replace a workflow's nodes and edges.

        Nodes carry a client-side "key" that edges use as source/target; the
        saved nodes get fresh ids.

        Raises:
            RunStateError: the workflow has a running or paused run, whose node
                results point at the current nodes
        """
        workflow = self.repo.get_workflow(workflow_id)
        active = self.repo.count_active_runs(workflow_id)
        if active:
            raise RunStateError(
                f"Workflow {workflow_id} has {active} active run(s). Cancel or finish them before editing the graph."
            )
        edge_refs = validate_graph(nodes, edges)

        try:
            self.repo.replace_graph(workflow, nodes, edge_refs)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"Saved graph of workflow {workflow_id}",
            extra={"nodes": len(nodes), "edges": len(edge_refs)},
        )
        return workflow

    def clone_workflow(self, workflow_id: int, target_model_id: Optional[int] = None,
                       as_template: bool = False, created_by: Optional[str] = None) -> Workflow:
        """Copy a workflow and its graph, either onto a model or as a template."""
        source = self.repo.get_workflow(workflow_id)

        model_id = None if as_template else target_model_id
        self._check_model(source.agency_id, model_id)

        clone = Workflow(
            agency_id=source.agency_id,
            model_id=model_id,
            source_workflow_id=source.id,
            name=f"{source.name} (copy)",
            description=source.description,
            status="draft",
            created_by=created_by,
        )
        self.session.add(clone)
        self.session.flush()

        id_map: Dict[int, int] = {}
        for node in source.nodes:
            copy = WorkflowNode(
                workflow_id=clone.id,
                node_type=node.node_type,
                label=node.label,
                config=dict(node.config or {}),
                position_x=node.position_x,
                position_y=node.position_y,
            )
            self.session.add(copy)
            self.session.flush()
            id_map[node.id] = copy.id

        for edge in source.edges:
            self.session.add(WorkflowEdge(
                workflow_id=clone.id,
                source_node_id=id_map[edge.source_node_id],
                source_port=edge.source_port,
                target_node_id=id_map[edge.target_node_id],
                target_port=edge.target_port,
            ))

        self.session.commit()
        logger.info(f"Cloned workflow {source.id} into {clone.id}", extra={"as_template": as_template})
        return clone

    def get_workflow(self, workflow_id: int) -> Workflow:
        return self.repo.get_workflow(workflow_id)

    def list_workflows(self, agency_id: Optional[int] = None, status: Optional[str] = None,
                       limit: int = 100, offset: int = 0) -> List[Workflow]:
        return self.repo.list_workflows(agency_id=agency_id, status=status, limit=limit, offset=offset)
