"""Assemble the run machinery for one process.

Everything shares one session factory, one lease manager and one
broadcaster.  A successful run hands outcome ingestion to the worker pool's
background thread so the executor never waits on the learning tables.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from itemresearch.activity.broadcaster import ActivityBroadcaster
from itemresearch.core.settings import Settings, get_settings
from itemresearch.db.session import session_scope
from itemresearch.learning.anomaly import AnomalyDetector
from itemresearch.learning.calibration import active_pins, pinned_weights_loader
from itemresearch.learning.outcomes import OutcomeService
from itemresearch.pipeline.checkpoint import CheckpointStore
from itemresearch.pipeline.executor import PipelineExecutor
from itemresearch.pipeline.graph import PipelineGraph
from itemresearch.pipeline.lease import LeaseManager
from itemresearch.pipeline.nodes import build_research_graph
from itemresearch.pipeline.tools import HttpToolInvoker, ToolInvoker
from itemresearch.runs.controller import RunController
from itemresearch.runs.recovery import RecoverySweeper
from itemresearch.runs.worker import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class ResearchRuntime:
    session_factory: sessionmaker
    settings: Settings
    broadcaster: ActivityBroadcaster
    leases: LeaseManager
    graph: PipelineGraph
    store: CheckpointStore
    executor: PipelineExecutor
    pool: WorkerPool
    controller: RunController
    sweeper: RecoverySweeper

    def shutdown(self, wait: bool = True) -> None:
        self.pool.shutdown(wait=wait)


def ingest_outcome(session_factory: sessionmaker, settings: Settings, run_id: UUID) -> None:
    """Snapshot a finished run into the learning tables."""
    with session_scope(session_factory) as db:
        service = OutcomeService(db, AnomalyDetector(db, settings))
        outcome = service.ingest_completed_run(run_id)
        logger.info("Run %s produced outcome %s", run_id, outcome.id)


def build_runtime(
    session_factory: sessionmaker,
    settings: Settings | None = None,
    tools: ToolInvoker | None = None,
    broadcaster: ActivityBroadcaster | None = None,
    graph: PipelineGraph | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ResearchRuntime:
    settings = settings or get_settings()
    broadcaster = broadcaster or ActivityBroadcaster()
    leases = LeaseManager(ttl_s=settings.lease_ttl_s)
    graph = graph or build_research_graph(node_timeout_s=settings.node_timeout_s)
    store = CheckpointStore(session_factory, leases, broadcaster)

    def on_success(run_id: UUID) -> None:
        pool.submit_background(ingest_outcome, session_factory, settings, run_id)

    executor = PipelineExecutor(
        store,
        graph,
        tools or HttpToolInvoker(),
        settings=settings,
        weights_loader=pinned_weights_loader(session_factory, settings),
        on_success=on_success,
        sleep=sleep,
    )
    pool = WorkerPool(session_factory, executor, leases, max_workers=settings.worker_count)
    controller = RunController(
        session_factory,
        pool,
        leases,
        graph,
        settings=settings,
        broadcaster=broadcaster,
        pins_loader=active_pins,
    )
    sweeper = RecoverySweeper(session_factory, pool, controller, settings)
    return ResearchRuntime(
        session_factory=session_factory,
        settings=settings,
        broadcaster=broadcaster,
        leases=leases,
        graph=graph,
        store=store,
        executor=executor,
        pool=pool,
        controller=controller,
        sweeper=sweeper,
    )
