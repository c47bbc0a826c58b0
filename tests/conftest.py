"""
Pytest fixtures for AgencyFlow tests

This module provides shared fixtures for all tests:
- Database session fixtures (SQLite file per test)
- Seed helpers for agencies, models and workflow graphs
- Engine services wired to a fake HTTP transport
- A run launcher that only records run ids
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from agencyflow.config import Settings
from agencyflow.core.circuit_breaker import CircuitBreaker
from agencyflow.core.job_router import ComputeJobRouter
from agencyflow.core.request_queue import PerTenantQueue
from agencyflow.core.services import DatabaseGallerySink, EngineServices
from agencyflow.core.supervisor import RunLauncher
from agencyflow.models import Agency, Base, TargetModel, Workflow, WorkflowEdge, WorkflowNode


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """
    Session factory bound to a fresh SQLite file.

    A file (not :memory:) so every session gets its own connection, the way
    the runner and the API use separate sessions in production.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'agencyflow-test.db'}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    Base.metadata.create_all(engine)

    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# SEED HELPERS
# ============================================================================

def create_agency(session, credit_pool: int = 1000, slug: str = "velvet") -> Agency:
    agency = Agency(name=f"{slug.title()} Agency", slug=slug, credit_pool=credit_pool, credits_used_this_cycle=0)
    session.add(agency)
    session.commit()
    return agency


def create_target_model(session, agency: Agency, name: str = "Luna", lora_config: Optional[Dict] = None) -> TargetModel:
    model = TargetModel(
        agency_id=agency.id,
        name=name,
        slug=name.lower(),
        onlyfans_handle=f"@{name.lower()}",
        notes="Prefers warm lighting",
        lora_config=lora_config if lora_config is not None else {
            "path": "loras/luna_v2.safetensors",
            "weight": 0.85,
            "triggerWord": "lunaxyz",
        },
    )
    session.add(model)
    session.commit()
    return model


def create_workflow(
    session,
    agency: Agency,
    model: Optional[TargetModel],
    nodes: Sequence[Tuple[str, str, Dict[str, Any]]] = (),
    edges: Sequence[Tuple[str, str, str, str]] = (),
    status: str = "active",
    name: str = "Daily post",
) -> Tuple[Workflow, Dict[str, int]]:
    """
    Insert a workflow and its graph without save-time validation.

    Args:
        nodes: (key, node_type, config)
        edges: (source_key, source_port, target_key, target_port)

    Returns:
        (workflow, {key: node_id})
    """
    workflow = Workflow(
        agency_id=agency.id,
        model_id=model.id if model is not None else None,
        name=name,
        status=status,
    )
    session.add(workflow)
    session.flush()

    ids: Dict[str, int] = {}
    for key, node_type, config in nodes:
        node = WorkflowNode(workflow_id=workflow.id, node_type=node_type, label=key, config=config)
        session.add(node)
        session.flush()
        ids[key] = node.id

    for source, source_port, target, target_port in edges:
        session.add(WorkflowEdge(
            workflow_id=workflow.id,
            source_node_id=ids[source],
            source_port=source_port,
            target_node_id=ids[target],
            target_port=target_port,
        ))

    session.commit()
    return workflow, ids


@pytest.fixture
def agency(db_session):
    return create_agency(db_session)


@pytest.fixture
def target_model(db_session, agency):
    return create_target_model(db_session, agency)


# Generate 2 images -> pick one -> caption -> save
CONTENT_PIPELINE_NODES = [
    ("gen", "generate_image", {"model": "qwen", "prompt": "{{model.name}} at golden hour", "count": 2}),
    ("pick", "pick", {}),
    ("caption", "ai_caption", {"tone": "playful"}),
    ("save", "save_to_gallery", {"tags": ["daily"]}),
]
CONTENT_PIPELINE_EDGES = [
    ("gen", "images", "pick", "images"),
    ("pick", "image", "caption", "media"),
    ("caption", "media", "save", "media"),
    ("caption", "text", "save", "caption"),
]


@pytest.fixture
def content_pipeline(db_session, agency, target_model):
    return create_workflow(db_session, agency, target_model, CONTENT_PIPELINE_NODES, CONTENT_PIPELINE_EDGES)


# ============================================================================
# ENGINE SERVICES
# ============================================================================

async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        runpod_dedicated_url="https://dedicated.test",
        runpod_serverless_url="https://serverless.test",
        runpod_api_key="rp-key",
        wavespeed_api_key="ws-key",
        wavespeed_min_delay_seconds=0.0,
        openrouter_api_key="or-key",
        replicate_api_token="r8-token",
        scheduler_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)


def unexpected_request(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected HTTP request: {request.method} {request.url}")


def make_services(session_factory, handler=unexpected_request, settings: Optional[Settings] = None) -> EngineServices:
    """EngineServices whose HTTP traffic goes to handler and whose sleeps return immediately."""
    settings = settings or make_settings()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EngineServices(
        settings=settings,
        http_client=client,
        job_router=ComputeJobRouter(
            client,
            settings.runpod_dedicated_url,
            settings.runpod_serverless_url,
            settings.runpod_api_key,
            dedicated_timeout=1.0,
            poll_interval=0.0,
            max_poll_attempts=5,
            breaker=CircuitBreaker("dedicated"),
            sleep=no_sleep,
        ),
        wavespeed_queue=PerTenantQueue(0.0, name="wavespeed", sleep=no_sleep),
        gallery=DatabaseGallerySink(session_factory),
        sleep=no_sleep,
    )


@pytest.fixture
def services(session_factory):
    return make_services(session_factory)


# ============================================================================
# LAUNCHER
# ============================================================================

class RecordingRunLauncher(RunLauncher):
    """Records launched run ids instead of executing them."""

    def __init__(self):
        self.launched: List[int] = []

    def launch(self, run_id: int) -> None:
        self.launched.append(run_id)


@pytest.fixture
def launcher():
    return RecordingRunLauncher()
