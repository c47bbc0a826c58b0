"""
Celery Application Configuration for AgencyFlow

Used when RUN_EXECUTION_MODE=celery: runs are executed by separate worker
processes instead of inside the API process.

Architecture:
- Message Broker: Redis
- Result Backend: Redis
- Workers: separate service, one run per worker process at a time
"""

import logging
from celery import Celery
from kombu import Queue, Exchange
from ..config import get_settings
from ..core.logging_config import setup_logging

settings = get_settings()

# Initialize structured logging for Celery workers
setup_logging(
    level=settings.log_level,
    json_logs=settings.json_logs,
    log_file=settings.log_file,
)

logger = logging.getLogger(__name__)

REDIS_URL = settings.redis_url
if not REDIS_URL:
    raise ValueError(
        "REDIS_URL environment variable not set. "
        "Required for Celery message broker and result backend."
    )

celery_app = Celery("agencyflow")

celery_app.conf.update(
    # ============================================================================
    # BROKER & BACKEND
    # ============================================================================
    broker_url=REDIS_URL,
    result_backend=REDIS_URL,
    broker_connection_retry_on_startup=True,

    # ============================================================================
    # SERIALIZATION
    # ============================================================================
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # ============================================================================
    # TIMEZONE
    # ============================================================================
    timezone="UTC",
    enable_utc=True,

    # ============================================================================
    # TASK EXECUTION
    # ============================================================================
    task_track_started=True,

    # Acknowledge after execution; a run resumes from its stored node results
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Video jobs can poll for several minutes per node
    task_time_limit=3600,
    task_soft_time_limit=3540,

    # ============================================================================
    # RESULTS
    # ============================================================================
    result_expires=86400,  # 24 hours in seconds

    # ============================================================================
    # TASK ROUTING
    # ============================================================================
    task_default_queue="runs",
    task_default_exchange="runs",
    task_default_routing_key="run.execute",
    task_queues=(
        Queue("runs", Exchange("runs"), routing_key="run.execute"),
    ),
    task_routes={
        "execute_run_task": {"queue": "runs", "routing_key": "run.execute"},
    },

    # ============================================================================
    # WORKER CONFIGURATION
    # ============================================================================
    worker_concurrency=2,
    worker_max_tasks_per_child=1000,

    # ============================================================================
    # MONITORING & LOGGING
    # ============================================================================
    worker_send_task_events=True,
    task_send_sent_event=True,
    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
)

logger.info("Celery app configured successfully")
logger.info(f"Broker: {REDIS_URL.split('@')[1] if '@' in REDIS_URL else 'configured'}")

# This import MUST come AFTER celery_app is configured
from . import tasks  # noqa: F401, E402
