"""
AgencyFlow API - FastAPI Application

REST API for building and running content-generation workflows.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.engine import WorkflowRunner
from ..core.exceptions import (
    AgencyFlowError,
    InsufficientCreditsError,
    ResourceNotFoundError,
)
from ..core.logging_config import setup_logging, set_request_id, clear_request_id
from ..core.metrics import check_system_health
from ..core.nodes import node_catalog
from ..core.runs import RunService
from ..core.scheduler import TriggerScheduler
from ..core.services import EngineServices
from ..core.supervisor import InProcessRunLauncher, TaskSupervisor
from ..core.template_vars import available_variables
from ..core.triggers import TriggerService
from ..core.workflows import WorkflowService
from .schemas import (
    ApproveRequest,
    CloneRequest,
    GraphSave,
    MessageResponse,
    RunDetailResponse,
    RunListResponse,
    RunResponse,
    RunStartRequest,
    TriggerCreate,
    TriggerResponse,
    TriggerUpdate,
    WorkflowCreate,
    WorkflowDetailResponse,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowUpdate,
)

# Initialize structured logging
setup_logging()

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_db(request: Request):
    """Dependency for database session"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_launcher(request: Request):
    return getattr(request.app.state, "launcher", None)


def get_services(request: Request) -> Optional[EngineServices]:
    return getattr(request.app.state, "services", None)


# ============================================================================
# LIFESPAN
# ============================================================================

def _build_launcher(settings: Settings, supervisor: TaskSupervisor, runner: WorkflowRunner):
    if settings.run_execution_mode == "celery":
        # Imported lazily: the Celery app requires REDIS_URL
        from ..workers.tasks import CeleryRunLauncher
        return CeleryRunLauncher()
    return InProcessRunLauncher(supervisor, runner.run_workflow, loop=asyncio.get_running_loop())


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    session_factory = app.state.session_factory

    services = EngineServices.from_settings(settings, session_factory)
    services.start()
    supervisor = TaskSupervisor()
    runner = WorkflowRunner(session_factory, services, settings.node_claim_timeout_seconds)
    launcher = _build_launcher(settings, supervisor, runner)

    scheduler = TriggerScheduler(session_factory, launcher, settings.scheduler_poll_interval_seconds)
    if settings.scheduler_enabled:
        scheduler.start()

    app.state.services = services
    app.state.supervisor = supervisor
    app.state.launcher = launcher
    app.state.scheduler = scheduler

    logger.info(
        "AgencyFlow API started",
        extra={
            "execution_mode": settings.run_execution_mode,
            "scheduler_enabled": settings.scheduler_enabled,
        },
    )
    try:
        yield
    finally:
        await scheduler.stop()
        await supervisor.shutdown()
        await services.aclose()
        logger.info("AgencyFlow API stopped")


# ============================================================================
# ROOT & HEALTH
# ============================================================================

router = APIRouter()


@router.get(
    "/",
    tags=["health"],
    summary="API root",
    description="Returns basic API information and links to documentation."
)
def root():
    """Root endpoint - Returns API info"""
    return {
        "name": "AgencyFlow API",
        "version": API_VERSION,
        "status": "healthy",
        "docs": "/docs",
        "redoc": "/redoc"
    }


@router.get(
    "/health",
    tags=["health"],
    summary="Health check (lightweight)",
    description="""
    Lightweight health check - just verifies the API server is running.

    For database, dedicated pool and error-rate checks, use GET /metrics
    """
)
def health_check():
    """Lightweight health check - just confirms API is alive"""
    return {
        "status": "healthy",
        "service": "AgencyFlow API",
        "version": API_VERSION
    }


@router.get(
    "/metrics",
    tags=["health"],
    summary="System metrics and component health",
    description="""
    Run statistics, error rate, credits consumed, workflow and trigger counts,
    compute router and request queue state, and database health.

    Returns HTTP 503 when any component is unhealthy.
    """
)
def get_metrics(db: Session = Depends(get_db), services: Optional[EngineServices] = Depends(get_services)):
    health = check_system_health(db, services)
    status_code = 200 if health["healthy"] else 503
    return JSONResponse(status_code=status_code, content=health)


# ============================================================================
# CATALOG
# ============================================================================

@router.get(
    "/node-types",
    tags=["catalog"],
    summary="List node types",
    description="""
    Every node type with its category, input and output ports, config fields
    and whether it pauses the run for review. Also returns the port
    compatibility table used when connecting nodes.
    """
)
def list_node_types():
    return node_catalog()


@router.get(
    "/template-variables",
    tags=["catalog"],
    summary="List template variables",
    description="""
    Variables that can be used in node config strings, e.g. `{{model.name}}`.

    They are substituted with the target model's data when a run executes.
    Unknown variables are left as-is.
    """
)
def list_template_variables():
    return {"variables": available_variables()}


# ============================================================================
# WORKFLOWS
# ============================================================================

@router.post(
    "/workflows",
    response_model=WorkflowResponse,
    status_code=201,
    tags=["workflows"],
    summary="Create a workflow",
    description="""
    Create an empty workflow for an agency.

    Leave model_id empty to create a template; templates can be cloned onto
    models but cannot be run.
    """
)
def create_workflow(payload: WorkflowCreate, db: Session = Depends(get_db)):
    return WorkflowService(db).create_workflow(
        agency_id=payload.agency_id,
        name=payload.name,
        description=payload.description,
        model_id=payload.model_id,
        created_by=payload.created_by,
    )


@router.get(
    "/workflows",
    response_model=WorkflowListResponse,
    tags=["workflows"],
    summary="List workflows",
    description="List workflows, optionally filtered by agency and status, newest first."
)
def list_workflows(
    agency_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    workflows = WorkflowService(db).list_workflows(agency_id=agency_id, status=status, limit=limit, offset=offset)
    return {"workflows": workflows, "total": len(workflows)}


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDetailResponse,
    tags=["workflows"],
    summary="Get a workflow with its graph"
)
def get_workflow(workflow_id: int, db: Session = Depends(get_db)):
    return WorkflowService(db).get_workflow(workflow_id)


@router.put(
    "/workflows/{workflow_id}",
    response_model=WorkflowResponse,
    tags=["workflows"],
    summary="Update workflow metadata",
    description="Update name, description, status or target model. Use PUT /workflows/{id}/graph for nodes and edges."
)
def update_workflow(workflow_id: int, payload: WorkflowUpdate, db: Session = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    return WorkflowService(db).update_workflow(workflow_id, **changes)


@router.delete(
    "/workflows/{workflow_id}",
    response_model=MessageResponse,
    tags=["workflows"],
    summary="Delete a workflow",
    description="Deletes the workflow with its graph, runs and triggers."
)
def delete_workflow(workflow_id: int, db: Session = Depends(get_db)):
    WorkflowService(db).delete_workflow(workflow_id)
    return {"message": f"Workflow {workflow_id} deleted"}


@router.put(
    "/workflows/{workflow_id}/graph",
    response_model=WorkflowDetailResponse,
    tags=["workflows"],
    summary="Save the workflow graph",
    description="""
    Replace all nodes and edges of a workflow.

    The graph is validated before anything is written:
    - node types must exist and configs must be valid
    - edges must connect existing ports with compatible types
    - each input port accepts at most one edge
    - the graph must be acyclic

    Validation errors return HTTP 400 with the offending node_id when known.
    """
)
def save_graph(workflow_id: int, payload: GraphSave, db: Session = Depends(get_db)):
    nodes = [node.model_dump() for node in payload.nodes]
    edges = [edge.model_dump() for edge in payload.edges]
    return WorkflowService(db).save_graph(workflow_id, nodes, edges)


@router.post(
    "/workflows/{workflow_id}/clone",
    response_model=WorkflowDetailResponse,
    status_code=201,
    tags=["workflows"],
    summary="Clone a workflow",
    description="""
    Copy a workflow and its graph, either onto a target model or as a template.
    The copy starts as a draft.
    """
)
def clone_workflow(workflow_id: int, payload: CloneRequest, db: Session = Depends(get_db)):
    return WorkflowService(db).clone_workflow(
        workflow_id,
        target_model_id=payload.target_model_id,
        as_template=payload.as_template,
        created_by=payload.created_by,
    )


# ============================================================================
# RUNS
# ============================================================================

@router.post(
    "/workflows/{workflow_id}/runs",
    response_model=RunResponse,
    status_code=202,
    tags=["runs"],
    summary="Start a run",
    description="""
    Start executing a workflow against its target model.

    The run is created in "running" state and executes in the background.
    Poll GET /runs/{id} for progress. Review and pick nodes pause the run in
    "waiting_for_review" until approved.

    Returns HTTP 402 when the agency has no credits left.
    """
)
def start_run(
    workflow_id: int,
    payload: Optional[RunStartRequest] = None,
    db: Session = Depends(get_db),
    launcher=Depends(get_launcher),
):
    started_by = payload.started_by if payload else None
    return RunService(db, launcher).start_run(workflow_id, started_by=started_by)


@router.get(
    "/workflows/{workflow_id}/runs",
    response_model=RunListResponse,
    tags=["runs"],
    summary="List runs of a workflow"
)
def list_runs(workflow_id: int, limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    runs = RunService(db).list_runs(workflow_id, limit=limit)
    return {"runs": runs, "total": len(runs)}


@router.get(
    "/runs/{run_id}",
    response_model=RunDetailResponse,
    tags=["runs"],
    summary="Get a run with its node results"
)
def get_run(run_id: int, db: Session = Depends(get_db)):
    return RunService(db).get_run(run_id)


@router.post(
    "/runs/{run_id}/nodes/{node_id}/approve",
    response_model=RunResponse,
    tags=["runs"],
    summary="Approve a review or pick node",
    description="""
    Complete a node that is waiting for review and resume the run.

    For pick nodes, selected_index chooses which generated image continues
    downstream.
    """
)
def approve_node(
    run_id: int,
    node_id: int,
    payload: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
    launcher=Depends(get_launcher),
):
    selected_index = payload.selected_index if payload else None
    return RunService(db, launcher).approve(run_id, node_id, selected_index=selected_index)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=RunResponse,
    tags=["runs"],
    summary="Cancel a run",
    description="Cancel a run that has not finished. Nodes that have not completed are marked skipped."
)
def cancel_run(run_id: int, db: Session = Depends(get_db)):
    return RunService(db).cancel(run_id)


# ============================================================================
# TRIGGERS
# ============================================================================

@router.post(
    "/workflows/{workflow_id}/triggers",
    response_model=TriggerResponse,
    status_code=201,
    tags=["triggers"],
    summary="Create a trigger",
    description="""
    Create a scheduled or webhook trigger for a workflow.

    Scheduled triggers take a schedule_config:
    - frequency: daily, weekly or specific_days
    - time: "HH:MM" in the trigger's timezone
    - days: weekdays 0-6 (0 = Sunday), required unless daily
    - timezone: IANA name, defaults to UTC
    """
)
def create_trigger(workflow_id: int, payload: TriggerCreate, db: Session = Depends(get_db)):
    return TriggerService(db).create_trigger(
        workflow_id,
        trigger_type=payload.trigger_type,
        schedule_config=payload.schedule_config,
        enabled=payload.enabled,
        max_concurrent_runs=payload.max_concurrent_runs,
    )


@router.get(
    "/workflows/{workflow_id}/triggers",
    response_model=List[TriggerResponse],
    tags=["triggers"],
    summary="List triggers of a workflow"
)
def list_triggers(workflow_id: int, db: Session = Depends(get_db)):
    return TriggerService(db).list_triggers(workflow_id)


@router.put(
    "/triggers/{trigger_id}",
    response_model=TriggerResponse,
    tags=["triggers"],
    summary="Update a trigger",
    description="Changing the schedule or enabling the trigger recomputes next_trigger_at."
)
def update_trigger(trigger_id: int, payload: TriggerUpdate, db: Session = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    return TriggerService(db).update_trigger(trigger_id, **changes)


@router.delete(
    "/triggers/{trigger_id}",
    response_model=MessageResponse,
    tags=["triggers"],
    summary="Delete a trigger"
)
def delete_trigger(trigger_id: int, db: Session = Depends(get_db)):
    TriggerService(db).delete_trigger(trigger_id)
    return {"message": f"Trigger {trigger_id} deleted"}


# ============================================================================
# APPLICATION
# ============================================================================

def _error_status(exc: AgencyFlowError) -> int:
    if isinstance(exc, ResourceNotFoundError):
        return 404
    if isinstance(exc, InsufficientCreditsError):
        return 402
    return 400


def create_app(settings: Optional[Settings] = None, session_factory=None) -> FastAPI:
    """Build the API. Tests pass their own settings and session factory."""
    if session_factory is None:
        from ..database import SessionLocal
        session_factory = SessionLocal

    app = FastAPI(
        title="AgencyFlow API",
        description="""
        AI content workflow engine for agencies.

        Build node graphs that generate, review, caption and publish media for
        each target model, run them on demand or on a schedule, and track the
        credits every step consumes.
        """,
        version=API_VERSION,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health checks and metrics"},
            {"name": "catalog", "description": "Node types and template variables for the editor"},
            {"name": "workflows", "description": "Workflow CRUD, graph editing and cloning"},
            {"name": "runs", "description": "Start, inspect, approve and cancel runs"},
            {"name": "triggers", "description": "Scheduled and webhook triggers"},
        ]
    )
    app.state.settings = settings or get_settings()
    app.state.session_factory = session_factory

    # ========================================================================
    # MIDDLEWARE - CORS Configuration
    # ========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",  # Local development (Next.js default)
            "http://localhost:5173",  # Local development (Vite default)
            app.state.settings.app_url,
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # MIDDLEWARE - Request ID Tracking
    # ========================================================================

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """
        Middleware to add request ID to all requests.

        - Generates UUID for each request
        - Sets request ID in logging context
        - Adds X-Request-ID header to response
        """
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        set_request_id(request_id)

        logger.info(
            f"{request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(f"Response {response.status_code}", extra={"status_code": response.status_code})
            return response
        except Exception as e:
            logger.exception("Unhandled exception in request", extra={"error": str(e)})
            raise
        finally:
            clear_request_id()

    # ========================================================================
    # EXCEPTION HANDLERS
    # ========================================================================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Custom HTTP exception handler for better error responses"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code
            }
        )

    @app.exception_handler(AgencyFlowError)
    async def agencyflow_exception_handler(request, exc: AgencyFlowError):
        status_code = _error_status(exc)
        content = {"error": exc.message, "status_code": status_code}
        node_id = getattr(exc, "node_id", None)
        if node_id is not None:
            content["node_id"] = node_id
        logger.info(f"{type(exc).__name__}: {exc.message}", extra={"status_code": status_code})
        return JSONResponse(status_code=status_code, content=content)

    app.include_router(router)
    return app


app = create_app()
