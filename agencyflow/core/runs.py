"""
Run control: start, approve, cancel.

These are the only ways a run changes state from outside the runner.
Starting and approving hand the run to a RunLauncher after the database
transaction is committed.
"""

import logging
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ..models import WorkflowNode, WorkflowRun
from .exceptions import InsufficientCreditsError, ResourceNotFoundError, RunStateError
from .nodes import get_node_kind
from .repository import Repository, utcnow
from .supervisor import RunLauncher

logger = logging.getLogger(__name__)


class RunService:

    def __init__(self, session: Session, launcher: Optional[RunLauncher] = None):
        self.session = session
        self.repo = Repository(session)
        self.launcher = launcher

    def _launch(self, run_id: int) -> None:
        if self.launcher is None:
            logger.warning(f"No launcher configured, run {run_id} will not execute")
            return
        self.launcher.launch(run_id)

    def start_run(self, workflow_id: int, started_by: Optional[str] = None) -> WorkflowRun:
        """
        Create a run for a workflow and launch it.

        Raises:
            RunStateError: workflow is a template or has no nodes
            InsufficientCreditsError: agency credit pool is empty
        """
        workflow = self.repo.get_workflow(workflow_id)

        if workflow.is_template:
            raise RunStateError("Templates cannot be run. Clone it to a model first.")
        if not workflow.nodes:
            raise RunStateError("Workflow has no nodes")

        agency = self.repo.get_agency(workflow.agency_id)
        if (agency.credit_pool or 0) <= 0:
            raise InsufficientCreditsError("Insufficient credits to start workflow", agency_id=agency.id)

        run = self.repo.create_run(workflow, started_by=started_by)
        self.session.commit()

        self._launch(run.id)
        return run

    def approve(self, run_id: int, node_id: int, selected_index: Any = None) -> WorkflowRun:
        """
        Approve the gate a run is paused at and resume the run.

        Args:
            selected_index: For pick gates, the index of the image to keep

        Raises:
            RunStateError: run or node is not waiting for review, or bad selection
            ResourceNotFoundError: the paused node was removed from the workflow
        """
        run = self.repo.get_run(run_id)
        if run.status != "waiting_for_review":
            raise RunStateError(f"Run is not waiting for review (status: {run.status})", run_id=run_id)

        result = self.repo.get_node_result(run_id, node_id)
        if result.status != "waiting_for_review":
            raise RunStateError(f"Node {node_id} is not waiting for review (status: {result.status})", run_id=run_id)

        node = self.session.get(WorkflowNode, node_id)
        if node is None or node.workflow_id != run.workflow_id:
            raise ResourceNotFoundError(
                f"Node {node_id} no longer exists in workflow {run.workflow_id}", "Node", node_id
            )
        output = get_node_kind(node.node_type).apply_selection(result.output, selected_index)

        # Two approvals racing for the same pause: only one flips the run back to running
        if not self.repo.claim_run_status(run, "waiting_for_review", "running"):
            self.session.rollback()
            raise RunStateError(f"Run {run_id} is no longer waiting for review", run_id=run_id)

        self.repo.transition_node_result(result, "completed", output=output, completed_at=utcnow())
        self.session.commit()

        logger.info(f"Run {run_id} approved at node {node_id}", extra={"selected_index": selected_index})
        self._launch(run.id)
        return run

    def cancel(self, run_id: int) -> WorkflowRun:
        """
        Cancel a run. Unfinished node results become skipped; a node that is
        executing right now is not interrupted.
        """
        run = self.repo.get_run(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run is already {run.status}", run_id=run_id)

        run.status = "cancelled"
        run.completed_at = utcnow()
        skipped = self.repo.skip_unfinished_results(run_id)
        self.session.commit()

        logger.info(f"Run {run_id} cancelled", extra={"skipped_nodes": skipped})
        return run

    def get_run(self, run_id: int) -> WorkflowRun:
        return self.repo.get_run(run_id)

    def list_runs(self, workflow_id: int, limit: int = 50) -> List[WorkflowRun]:
        self.repo.get_workflow(workflow_id)
        return self.repo.list_runs(workflow_id, limit=limit)
