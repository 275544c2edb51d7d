"""Shared fixtures: in-memory database, canned tools and run plumbing."""
from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from itemresearch.activity.broadcaster import ActivityBroadcaster
from itemresearch.core.settings import Settings
from itemresearch.db.base import Base
from itemresearch.db.models import ResearchRun
from itemresearch.db.session import build_engine, session_scope
from itemresearch.pipeline.checkpoint import CheckpointStore
from itemresearch.pipeline.executor import PipelineExecutor
from itemresearch.pipeline.lease import LeaseManager
from itemresearch.pipeline.nodes import build_research_graph
from itemresearch.pipeline.tools import ToolRegistry, ToolResult
from itemresearch.runs.controller import RunController

TEST_HOLDER = "test-host:1:holder"

ITEM_CONTEXT = {
    "item": {"sku": "SKU-1", "user_fields": {"title": "Canon AE-1 35mm camera", "condition": "used_good"}},
    "media": ["front.jpg"],
    "required_fields": [],
}


def canned_tools() -> ToolRegistry:
    """Tools whose answers make every required field confirmed in one pass."""
    registry = ToolRegistry()
    registry.register("item_context", lambda payload: ITEM_CONTEXT)
    registry.register("vision_analysis", lambda payload: ToolResult(
        output={"fields": {"category": "Film Cameras", "color": "black", "material": "metal"}},
        cost_usd=0.01,
        confidence=0.8,
    ))
    registry.register("product_identification", lambda payload: ToolResult(
        output={"fields": {"brand": "Canon", "model": "AE-1", "year": 1976}},
        cost_usd=0.02,
        confidence=0.9,
    ))
    registry.register("comp_search", lambda payload: ToolResult(
        output={"comps": [{"id": "c1", "price": 120.0}, {"id": "c2", "price": 140.0}]},
        confidence=0.7,
    ))
    registry.register("comp_analysis", lambda payload: ToolResult(
        output={"analysis": {"median": 130.0}},
        confidence=0.7,
    ))
    registry.register("pricing", lambda payload: ToolResult(
        output={"floor": 110.0, "target": 130.0, "ceiling": 150.0},
        confidence=0.85,
    ))
    return registry


def create_success_run(
    db,
    item_id: str,
    organization_id: str | None = "org-1",
    target: float | None = 100.0,
    floor: float | None = 80.0,
    ceiling: float | None = 120.0,
    tools: list[dict] | None = None,
) -> ResearchRun:
    """Insert a finished run with a result block, as persist_results leaves it."""
    if tools is None:
        tools = [
            {"tool_type": "product_identification", "confidence": 0.9},
            {"tool_type": "pricing", "confidence": 0.8},
        ]
    run = ResearchRun(
        item_id=item_id,
        organization_id=organization_id,
        run_type="manual_request",
        status="success",
        pipeline_version="research-graph/1",
        research_mode="balanced",
        research_constraints={},
        step_history=[],
        field_states={},
        context_data={
            "result": {
                "price_floor": floor,
                "price_target": target,
                "price_ceiling": ceiling,
                "category": "Film Cameras",
                "brand": "Canon",
                "model": "AE-1",
                "confidence": 0.74,
            },
            "tools_used": tools,
        },
    )
    db.add(run)
    db.flush()
    return run


class RecordingDispatcher:
    """Records dispatches instead of executing them."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def dispatch(self, run_id, holder_id=None):
        self.calls.append((run_id, holder_id))
        return None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Run plumbing
# ---------------------------------------------------------------------------

@pytest.fixture()
def settings():
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        node_retry_base_delay_s=0,
        node_retry_max_delay_s=0,
        lease_ttl_s=300,
        node_timeout_s=5.0,
    )


@pytest.fixture()
def tools():
    return canned_tools()


@pytest.fixture()
def graph():
    return build_research_graph()


@pytest.fixture()
def broadcaster():
    return ActivityBroadcaster()


@pytest.fixture()
def leases():
    return LeaseManager(ttl_s=300)


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def store(session_factory, leases, broadcaster):
    return CheckpointStore(session_factory, leases, broadcaster)


@pytest.fixture()
def executor(store, graph, tools, settings):
    return PipelineExecutor(store, graph, tools, settings=settings, sleep=lambda _: None)


@pytest.fixture()
def controller(session_factory, dispatcher, leases, graph, settings, broadcaster):
    return RunController(session_factory, dispatcher, leases, graph, settings=settings, broadcaster=broadcaster)


@pytest.fixture()
def drive(session_factory, leases, executor):
    """Execute a run in the test thread the way a worker would."""

    def _drive(run_id, holder_id=None, run_executor=None):
        if holder_id is None:
            holder_id = TEST_HOLDER
            with session_scope(session_factory) as db:
                assert leases.acquire(db, run_id, holder_id)
        try:
            return (run_executor or executor).execute(run_id, holder_id)
        finally:
            with session_scope(session_factory) as db:
                leases.release(db, run_id, holder_id)

    return _drive
