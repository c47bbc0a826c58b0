"""
Workflow Runner - executes a run's graph node by node.

run_workflow(run_id) can be called any number of times for the same run:
- runs not in "running" state are left alone
- nodes whose result is already terminal are skipped, so a run resumes
  right after the gate that paused it
- each node is claimed with a guarded UPDATE before it executes, so two
  runners racing on one run never both call a backend for the same node

Nodes execute sequentially in topological order. A gate node stores its
output, parks the run in waiting_for_review and returns. Any executor error
fails the node and the run; credits spent by earlier nodes stay spent.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..models import NodeResult, TargetModel, Workflow, WorkflowNode, WorkflowRun
from .context import ModelContext, RunContext
from .exceptions import CycleError, InsufficientCreditsError
from .graph import EdgeRef, topological_sort
from .logging_config import reset_run_id, set_run_id
from .nodes import calculate_node_credit_cost, get_node_kind
from .repository import Repository, utcnow
from .template_vars import resolve_node_config

logger = logging.getLogger(__name__)


def collect_inputs(node_id: int, edges: Iterable[EdgeRef], results: Dict[int, NodeResult]) -> Dict[str, Any]:
    """Map each incoming edge's upstream output value onto the target input port."""
    inputs: Dict[str, Any] = {}
    for edge in edges:
        if edge.target != node_id:
            continue
        upstream = results.get(edge.source)
        if upstream is None or not upstream.output:
            continue
        if edge.source_port in upstream.output:
            inputs[edge.target_port] = upstream.output[edge.source_port]
    return inputs


def _error_message(error: Exception) -> str:
    if isinstance(error, ValidationError):
        first = error.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"Invalid node config ({location}): {first.get('msg')}"
    return str(error) or error.__class__.__name__


class WorkflowRunner:

    def __init__(self, session_factory: Callable[[], Session], services, node_claim_timeout: float = 3600.0):
        """
        Args:
            session_factory: Creates a new SQLAlchemy session (one per call)
            services: EngineServices shared by every run of this process
            node_claim_timeout: Seconds after which a node left running is
                presumed orphaned and may be re-executed by another runner
        """
        self.session_factory = session_factory
        self.services = services
        self.node_claim_timeout = node_claim_timeout

    async def run_workflow(self, run_id: int) -> Optional[str]:
        """
        Execute (or resume) a run.

        Returns:
            The run status when this call stops, or None if the run does not exist
        """
        token = set_run_id(run_id)
        session = self.session_factory()
        try:
            return await self._run(session, run_id)
        except Exception as e:
            logger.exception(f"Run {run_id} crashed")
            session.rollback()
            self._fail_after_crash(run_id, _error_message(e))
            return "failed"
        finally:
            session.close()
            reset_run_id(token)

    def _fail_after_crash(self, run_id: int, message: str) -> None:
        session = self.session_factory()
        try:
            run = session.get(WorkflowRun, run_id)
            if run is not None and not run.is_terminal:
                Repository(session).fail_run(run, message)
                session.commit()
        except Exception:
            logger.exception(f"Could not mark run {run_id} as failed")
            session.rollback()
        finally:
            session.close()

    async def _run(self, session: Session, run_id: int) -> Optional[str]:
        repo = Repository(session)

        run = session.get(WorkflowRun, run_id)
        if run is None:
            logger.warning(f"Run {run_id} not found")
            return None
        if run.status != "running":
            logger.info(f"Run {run_id} is {run.status}, nothing to execute")
            return run.status

        workflow = session.get(Workflow, run.workflow_id)
        nodes: Dict[int, WorkflowNode] = {node.id: node for node in workflow.nodes}
        edges = [
            EdgeRef(edge.source_node_id, edge.source_port, edge.target_node_id, edge.target_port)
            for edge in workflow.edges
        ]

        try:
            order = topological_sort(list(nodes), edges)
        except CycleError as e:
            logger.error(f"Run {run_id} failed: {e}")
            repo.fail_run(run, str(e))
            session.commit()
            return run.status

        results = repo.node_results_by_node(run_id)
        model = session.get(TargetModel, run.model_id) if run.model_id else None
        ctx = RunContext(
            run_id=run.id,
            workflow_id=workflow.id,
            agency_id=run.agency_id,
            services=self.services,
            target_model=ModelContext.from_model(model),
        )

        logger.info(
            f"Executing run {run_id}",
            extra={"workflow_id": workflow.id, "nodes": len(order)},
        )

        for node_id in order:
            result = results.get(node_id)
            if result is None:
                logger.warning(f"Node {node_id} has no result in run {run_id}, skipping")
                continue
            if result.is_terminal:
                continue

            # Cooperative cancellation: another session may have cancelled the run
            session.refresh(run)
            session.refresh(result)
            if run.status != "running":
                logger.info(f"Run {run_id} is now {run.status}, stopping")
                return run.status
            if result.is_terminal:
                continue

            stale_before = utcnow() - timedelta(seconds=self.node_claim_timeout)
            claimed = repo.claim_node_result(result, stale_before)
            session.commit()
            if not claimed:
                logger.info(f"Node {node_id} of run {run_id} is held by another runner, stopping")
                return run.status

            status = await self._execute_node(session, repo, run, nodes[node_id], result, edges, results, ctx)
            if status != "running":
                return status

        run.status = "completed"
        run.completed_at = utcnow()
        session.commit()
        logger.info(f"Run {run_id} completed", extra={"credits_used": run.credits_used})
        return run.status

    async def _execute_node(
        self,
        session: Session,
        repo: Repository,
        run: WorkflowRun,
        node: WorkflowNode,
        result: NodeResult,
        edges,
        results: Dict[int, NodeResult],
        ctx: RunContext,
    ) -> str:
        """Run one node. Returns the run status afterwards ("running" means continue)."""
        inputs = collect_inputs(node.id, edges, results)

        logger.info(f"Executing node {node.id} ({node.node_type})", extra={"node_id": node.id})

        try:
            kind = get_node_kind(node.node_type)
            resolved = resolve_node_config(node.config, ctx.target_model)
            config = kind.parse_config(resolved)
            output = await kind.execute(config, inputs, ctx.for_node(node.id))
        except Exception as e:
            logger.error(f"Node {node.id} ({node.node_type}) failed: {e}", extra={"node_id": node.id})
            return self._fail_node(session, repo, run, result, _error_message(e))

        # A cancel that landed while the node was executing wins
        session.refresh(run)
        session.refresh(result)
        if run.status != "running":
            result.output = output
            session.commit()
            logger.info(f"Run {run.id} was {run.status} while node {node.id} executed; output kept")
            return run.status

        if kind.is_gate:
            repo.transition_node_result(result, "waiting_for_review", output=output)
            run.status = "waiting_for_review"
            session.commit()
            logger.info(f"Run {run.id} waiting for review at node {node.id}")
            return run.status

        cost = calculate_node_credit_cost(node.node_type, resolved)
        if cost > 0 and not repo.deduct_credits(run.agency_id, cost):
            error = InsufficientCreditsError(agency_id=run.agency_id, amount=cost)
            return self._fail_node(session, repo, run, result, str(error))

        repo.transition_node_result(
            result, "completed", output=output, credits_used=cost, completed_at=utcnow()
        )
        run.credits_used = (run.credits_used or 0) + cost
        session.commit()

        logger.info(f"Node {node.id} completed", extra={"node_id": node.id, "credits": cost})
        return run.status

    def _fail_node(self, session: Session, repo: Repository, run: WorkflowRun,
                   result: NodeResult, message: str) -> str:
        session.refresh(run)
        session.refresh(result)

        if not result.is_terminal:
            repo.transition_node_result(result, "failed", error=message, completed_at=utcnow())

        # A cancelled run stays cancelled
        if not run.is_terminal:
            repo.fail_run(run, message, node_id=result.node_id)

        session.commit()
        return run.status
