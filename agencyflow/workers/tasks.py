"""
Celery tasks for AgencyFlow.

execute_run_task runs one workflow run to completion or to its next review
gate. It is never retried by Celery: a failed node fails the run, and a
crashed worker leaves the run resumable from its stored node results.
"""

import asyncio
import logging
from typing import Any, Dict

from .celery_app import celery_app
from ..config import get_settings
from ..core.engine import WorkflowRunner
from ..core.services import EngineServices
from ..core.supervisor import RunLauncher
from ..database import SessionLocal

logger = logging.getLogger(__name__)


async def _run_with_services(run_id: int):
    settings = get_settings()
    services = EngineServices.from_settings(settings, SessionLocal)
    services.start()
    try:
        runner = WorkflowRunner(SessionLocal, services, settings.node_claim_timeout_seconds)
        return await runner.run_workflow(run_id)
    finally:
        await services.aclose()


@celery_app.task(bind=True, name="execute_run_task", max_retries=0)
def execute_run_task(self, run_id: int) -> Dict[str, Any]:
    """
    Execute a workflow run.

    Args:
        run_id: ID of a run in "running" state

    Returns:
        {"run_id": 123, "status": "completed"}
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: Executing run {run_id}")

    status = asyncio.run(_run_with_services(run_id))

    logger.info(f"Task {task_id}: Run {run_id} finished with status {status}")
    return {"run_id": run_id, "status": status}


class CeleryRunLauncher(RunLauncher):
    """Queues runs for Celery workers."""

    def launch(self, run_id: int) -> None:
        result = execute_run_task.delay(run_id)
        logger.info(f"Run {run_id} queued as task {result.id}")
