"""
Metrics collection for monitoring.

Reads run statistics from the database and combines them with the in-memory
state of the engine services (dedicated-pool breaker, job routes, queues).
"""

import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from ..models import Workflow, WorkflowRun, WorkflowTrigger
from .repository import utcnow

logger = logging.getLogger(__name__)

ERROR_RATE_ALERT_THRESHOLD = 50.0


class MetricsCollector:

    def __init__(self, db_session: Session, services=None):
        self.db_session = db_session
        self.services = services

    def get_run_stats(self, hours: int = 24) -> Dict[str, Any]:
        """Run counts by status and credits consumed over the last N hours."""
        try:
            since = utcnow() - timedelta(hours=hours)

            rows = self.db_session.query(WorkflowRun.status, func.count(WorkflowRun.id)).filter(
                WorkflowRun.started_at >= since
            ).group_by(WorkflowRun.status).all()
            by_status = {status: count for status, count in rows}

            credits = self.db_session.query(func.coalesce(func.sum(WorkflowRun.credits_used), 0)).filter(
                WorkflowRun.started_at >= since
            ).scalar() or 0

            return {
                "period_hours": hours,
                "total_runs": sum(by_status.values()),
                "by_status": by_status,
                "credits_used": int(credits),
            }

        except Exception as e:
            logger.error(f"Failed to get run stats: {e}")
            return {"period_hours": hours, "total_runs": 0, "by_status": {}, "credits_used": 0, "error": str(e)}

    def get_error_rate(self, hours: int = 1) -> Dict[str, Any]:
        """Share of finished runs that failed in the last N hours."""
        try:
            since = utcnow() - timedelta(hours=hours)

            finished = self.db_session.query(func.count(WorkflowRun.id)).filter(
                WorkflowRun.started_at >= since,
                WorkflowRun.status.in_(("completed", "failed")),
            ).scalar() or 0
            failed = self.db_session.query(func.count(WorkflowRun.id)).filter(
                WorkflowRun.started_at >= since,
                WorkflowRun.status == "failed",
            ).scalar() or 0

            return {
                "period_hours": hours,
                "finished_runs": finished,
                "failed_runs": failed,
                "error_rate": round(failed / finished * 100, 2) if finished else 0.0,
            }

        except Exception as e:
            logger.error(f"Failed to get error rate: {e}")
            return {"period_hours": hours, "finished_runs": 0, "failed_runs": 0, "error_rate": 0.0, "error": str(e)}

    def get_workflow_stats(self) -> Dict[str, Any]:
        try:
            total = self.db_session.query(func.count(Workflow.id)).scalar() or 0
            active = self.db_session.query(func.count(Workflow.id)).filter(Workflow.status == "active").scalar() or 0
            templates = self.db_session.query(func.count(Workflow.id)).filter(Workflow.model_id.is_(None)).scalar() or 0
            triggers = self.db_session.query(func.count(WorkflowTrigger.id)).filter(
                WorkflowTrigger.enabled.is_(True)
            ).scalar() or 0

            return {
                "total_workflows": total,
                "active_workflows": active,
                "templates": templates,
                "enabled_triggers": triggers,
            }

        except Exception as e:
            logger.error(f"Failed to get workflow stats: {e}")
            return {"total_workflows": 0, "active_workflows": 0, "templates": 0, "enabled_triggers": 0, "error": str(e)}

    def get_engine_status(self) -> Optional[Dict[str, Any]]:
        if self.services is None:
            return None
        return self.services.stats()

    def get_database_health(self) -> Dict[str, Any]:
        try:
            start = time.time()
            self.db_session.execute(text("SELECT 1")).fetchone()
            return {"connected": True, "response_time_ms": round((time.time() - start) * 1000, 2)}

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"connected": False, "response_time_ms": None, "error": str(e)}

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": utcnow().isoformat() + "Z",
            "runs": self.get_run_stats(hours=24),
            "error_rate": self.get_error_rate(hours=1),
            "workflows": self.get_workflow_stats(),
            "engine": self.get_engine_status(),
            "database": self.get_database_health(),
        }


def check_system_health(db_session: Session, services=None) -> Dict[str, Any]:
    """
    Overall health: database reachable, dedicated pool breaker not open,
    error rate under the alert threshold.
    """
    metrics = MetricsCollector(db_session, services).get_all_metrics()

    issues = []
    components = {}

    components["database"] = metrics["database"]["connected"]
    if not components["database"]:
        issues.append("Database connection failed")

    engine = metrics["engine"]
    if engine is not None:
        breaker = engine["job_router"]["breaker"]
        components["dedicated_pool"] = breaker["state"] != "open"
        if not components["dedicated_pool"]:
            issues.append("Dedicated pool circuit breaker is open (using serverless)")

    error_rate = metrics["error_rate"]["error_rate"]
    components["error_rate"] = error_rate < ERROR_RATE_ALERT_THRESHOLD
    if not components["error_rate"]:
        issues.append(f"High run error rate: {error_rate}%")

    return {
        "healthy": all(components.values()),
        "components": components,
        "issues": issues or None,
        "metrics": metrics,
    }
