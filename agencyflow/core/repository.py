"""
Persistence access for the engine.

All reads and writes of workflows, runs, node results and triggers go
through Repository(session). Methods flush but never commit; the caller
owns the transaction boundary.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from ..models import (
    Agency,
    NodeResult,
    TargetModel,
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    WorkflowRun,
    WorkflowTrigger,
)
from ..models.run import ACTIVE_RUN_STATUSES
from .exceptions import ResourceNotFoundError, RunStateError
from .graph import EdgeRef

logger = logging.getLogger(__name__)

# NodeResult status machine. Terminal states have no way out.
ALLOWED_NODE_TRANSITIONS = {
    "pending": {"running", "skipped"},
    # The runner enters running through claim_node_result, which also re-claims stale nodes
    "running": {"completed", "failed", "waiting_for_review", "skipped"},
    "waiting_for_review": {"completed", "skipped"},
    "completed": set(),
    "failed": set(),
    "skipped": set(),
}


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Repository:

    def __init__(self, session: Session):
        self.session = session

    # ========================================================================
    # LOOKUPS
    # ========================================================================

    def _get(self, model, resource: str, resource_id):
        instance = self.session.get(model, resource_id)
        if instance is None:
            raise ResourceNotFoundError(f"{resource} {resource_id} not found", resource, resource_id)
        return instance

    def get_agency(self, agency_id: int) -> Agency:
        return self._get(Agency, "Agency", agency_id)

    def get_target_model(self, model_id: int) -> TargetModel:
        return self._get(TargetModel, "Model", model_id)

    def get_workflow(self, workflow_id: int) -> Workflow:
        return self._get(Workflow, "Workflow", workflow_id)

    def get_run(self, run_id: int) -> WorkflowRun:
        return self._get(WorkflowRun, "Run", run_id)

    def get_trigger(self, trigger_id: int) -> WorkflowTrigger:
        return self._get(WorkflowTrigger, "Trigger", trigger_id)

    def list_workflows(self, agency_id: Optional[int] = None, status: Optional[str] = None,
                       limit: int = 100, offset: int = 0) -> List[Workflow]:
        query = self.session.query(Workflow)
        if agency_id is not None:
            query = query.filter(Workflow.agency_id == agency_id)
        if status is not None:
            query = query.filter(Workflow.status == status)
        return query.order_by(Workflow.updated_at.desc()).offset(offset).limit(limit).all()

    def list_runs(self, workflow_id: int, limit: int = 50) -> List[WorkflowRun]:
        return (
            self.session.query(WorkflowRun)
            .filter(WorkflowRun.workflow_id == workflow_id)
            .order_by(WorkflowRun.started_at.desc(), WorkflowRun.id.desc())
            .limit(limit)
            .all()
        )

    def list_triggers(self, workflow_id: int) -> List[WorkflowTrigger]:
        return (
            self.session.query(WorkflowTrigger)
            .filter(WorkflowTrigger.workflow_id == workflow_id)
            .order_by(WorkflowTrigger.created_at.desc(), WorkflowTrigger.id.desc())
            .all()
        )

    def node_results_by_node(self, run_id: int) -> Dict[int, NodeResult]:
        results = self.session.query(NodeResult).filter(NodeResult.run_id == run_id).all()
        return {result.node_id: result for result in results}

    def get_node_result(self, run_id: int, node_id: int) -> NodeResult:
        result = (
            self.session.query(NodeResult)
            .filter(NodeResult.run_id == run_id, NodeResult.node_id == node_id)
            .first()
        )
        if result is None:
            raise ResourceNotFoundError(f"Node {node_id} not found in run {run_id}", "NodeResult", node_id)
        return result

    def count_active_runs(self, workflow_id: int) -> int:
        return self.session.query(func.count(WorkflowRun.id)).filter(
            WorkflowRun.workflow_id == workflow_id,
            WorkflowRun.status.in_(ACTIVE_RUN_STATUSES),
        ).scalar() or 0

    def due_triggers(self, now: datetime) -> List[WorkflowTrigger]:
        return (
            self.session.query(WorkflowTrigger)
            .filter(
                WorkflowTrigger.enabled.is_(True),
                WorkflowTrigger.trigger_type == "scheduled",
                WorkflowTrigger.next_trigger_at.isnot(None),
                WorkflowTrigger.next_trigger_at <= now,
            )
            .order_by(WorkflowTrigger.next_trigger_at)
            .all()
        )

    # ========================================================================
    # RUNS
    # ========================================================================

    def create_run(self, workflow: Workflow, started_by: Optional[str] = None,
                   trigger_id: Optional[int] = None) -> WorkflowRun:
        """Create a running run with one pending NodeResult per workflow node."""
        run = WorkflowRun(
            workflow_id=workflow.id,
            model_id=workflow.model_id,
            agency_id=workflow.agency_id,
            status="running",
            credits_used=0,
            started_by=started_by,
            trigger_id=trigger_id,
            started_at=utcnow(),
        )
        self.session.add(run)
        self.session.flush()

        for node in workflow.nodes:
            self.session.add(NodeResult(run_id=run.id, node_id=node.id, status="pending", credits_used=0))
        self.session.flush()

        logger.info(
            f"Created run {run.id} for workflow {workflow.id}",
            extra={"nodes": len(workflow.nodes), "trigger_id": trigger_id},
        )
        return run

    def transition_node_result(self, result: NodeResult, status: str, **fields) -> NodeResult:
        """
        Move a NodeResult to a new status, refusing backwards transitions.

        Raises:
            RunStateError: transition not allowed from the current status
        """
        allowed = ALLOWED_NODE_TRANSITIONS.get(result.status, set())
        if status not in allowed:
            raise RunStateError(
                f"Node {result.node_id} cannot go from {result.status} to {status}", run_id=result.run_id
            )
        result.status = status
        for key, value in fields.items():
            setattr(result, key, value)
        return result

    def fail_run(self, run: WorkflowRun, error: str, node_id: Optional[int] = None) -> None:
        run.status = "failed"
        run.error = error
        run.failed_node_id = node_id
        run.completed_at = utcnow()

    def claim_run_status(self, run: WorkflowRun, from_status: str, to_status: str) -> bool:
        """
        Move a run from one status to another only if no other session moved it first.

        Returns:
            False if the run was no longer in from_status
        """
        statement = (
            update(WorkflowRun)
            .where(WorkflowRun.id == run.id, WorkflowRun.status == from_status)
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        claimed = self.session.execute(statement).rowcount == 1
        self.session.expire(run)
        return claimed

    def claim_node_result(self, result: NodeResult, stale_before: datetime) -> bool:
        """
        Mark a NodeResult running on behalf of this runner.

        A pending result can always be claimed. A running result can only be
        claimed once its started_at is older than stale_before, i.e. the runner
        that held it is presumed dead. Two runners racing for the same node
        therefore never both execute it.

        Returns:
            False if another runner holds the node
        """
        claimable = or_(
            NodeResult.status == "pending",
            and_(NodeResult.status == "running", NodeResult.started_at < stale_before),
        )
        statement = (
            update(NodeResult)
            .where(NodeResult.id == result.id, claimable)
            .values(status="running", started_at=utcnow(), error=None)
            .execution_options(synchronize_session=False)
        )
        claimed = self.session.execute(statement).rowcount == 1
        self.session.expire(result)
        return claimed

    def skip_unfinished_results(self, run_id: int) -> int:
        """Flip every pending, running or waiting NodeResult of a run to skipped."""
        count = 0
        for result in self.node_results_by_node(run_id).values():
            if not result.is_terminal:
                self.transition_node_result(result, "skipped", completed_at=utcnow())
                count += 1
        return count

    # ========================================================================
    # CREDITS
    # ========================================================================

    def deduct_credits(self, agency_id: int, amount: int) -> bool:
        """
        Atomically take amount credits from the agency pool.

        Single UPDATE guarded by credit_pool >= amount, so concurrent runs of
        the same agency can never drive the balance negative.

        Returns:
            False if the pool did not hold enough credits
        """
        statement = (
            update(Agency)
            .where(Agency.id == agency_id, Agency.credit_pool >= amount)
            .values(
                credit_pool=Agency.credit_pool - amount,
                credits_used_this_cycle=Agency.credits_used_this_cycle + amount,
            )
            .execution_options(synchronize_session=False)
        )
        deducted = self.session.execute(statement).rowcount == 1

        if deducted:
            # Loaded Agency rows would otherwise show the old balance
            for instance in list(self.session.identity_map.values()):
                if isinstance(instance, Agency) and instance.id == agency_id:
                    self.session.expire(instance)
        else:
            logger.warning(f"Credit deduction of {amount} refused for agency {agency_id}")

        return deducted

    # ========================================================================
    # GRAPH
    # ========================================================================

    def replace_graph(self, workflow: Workflow, nodes: Sequence[dict], edges: Iterable[EdgeRef]) -> Dict[object, int]:
        """
        Swap the whole graph of a workflow.

        Args:
            nodes: validated node dicts with a client-side "key"
            edges: EdgeRef objects whose endpoints are node keys

        Returns:
            Mapping of node key to new node id
        """
        self.session.query(WorkflowEdge).filter(WorkflowEdge.workflow_id == workflow.id).delete(
            synchronize_session=False
        )
        self.session.query(WorkflowNode).filter(WorkflowNode.workflow_id == workflow.id).delete(
            synchronize_session=False
        )
        self.session.expire(workflow, ["nodes", "edges"])

        key_to_id: Dict[object, int] = {}
        for node in nodes:
            position = node.get("position") or {}
            row = WorkflowNode(
                workflow_id=workflow.id,
                node_type=node["node_type"],
                label=node.get("label"),
                config=node.get("config") or {},
                position_x=position.get("x", 0),
                position_y=position.get("y", 0),
            )
            self.session.add(row)
            self.session.flush()
            key_to_id[node["key"]] = row.id

        for edge in edges:
            self.session.add(WorkflowEdge(
                workflow_id=workflow.id,
                source_node_id=key_to_id[edge.source],
                source_port=edge.source_port,
                target_node_id=key_to_id[edge.target],
                target_port=edge.target_port,
            ))

        workflow.updated_at = utcnow()
        self.session.flush()
        self.session.expire(workflow, ["nodes", "edges"])
        return key_to_id
