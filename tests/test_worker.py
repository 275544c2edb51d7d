"""Tests for itemresearch/runs/worker.py and runtime.py — threaded execution end to end.

These use a file-backed SQLite database so worker threads get their own
connections.
"""
from __future__ import annotations

import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from itemresearch.core.clock import utcnow
from itemresearch.core.settings import Settings
from itemresearch.db.base import Base
from itemresearch.db.repositories import ResearchOutcomeRepository
from itemresearch.db.session import build_engine, session_scope
from itemresearch.runs.controller import RunController
from itemresearch.runs.runtime import build_runtime
from tests.conftest import ITEM_CONTEXT, RecordingDispatcher, canned_tools


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def file_session_factory(tmp_path):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path}/worker.db")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def worker_settings(tmp_path):
    return Settings(
        database_url=f"sqlite+pysqlite:///{tmp_path}/worker.db",
        node_retry_base_delay_s=0,
        node_retry_max_delay_s=0,
        node_timeout_s=10.0,
        worker_count=2,
    )


@pytest.fixture()
def gate():
    return threading.Event()


@pytest.fixture()
def runtime(file_session_factory, worker_settings, gate):
    tools = canned_tools()

    def gated_item_context(payload):
        assert gate.wait(timeout=10)
        return ITEM_CONTEXT

    tools.register("item_context", gated_item_context)
    runtime = build_runtime(file_session_factory, worker_settings, tools=tools, sleep=lambda _: None)
    yield runtime
    gate.set()
    runtime.shutdown(wait=True)


@pytest.fixture()
def pending_run(runtime):
    """A pending run nobody has dispatched yet."""
    controller = RunController(
        runtime.session_factory, RecordingDispatcher(), runtime.leases, runtime.graph, settings=runtime.settings
    )
    return controller.start("item-1", organization_id="org-1")


def _wait_for_status(controller, run_id, statuses, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        snapshot = controller.get_status(run_id)
        if snapshot.status in statuses:
            return snapshot
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} never reached {statuses}")


# ===========================================================================
# WorkerPool
# ===========================================================================

class TestWorkerPool:
    def test_dispatch_executes_and_releases_lease(self, runtime, pending_run, gate):
        gate.set()

        future = runtime.pool.dispatch(pending_run.id)

        assert future.result(timeout=10) == "success"
        assert pending_run.id not in runtime.pool.in_flight()
        with session_scope(runtime.session_factory) as db:
            assert not runtime.leases.is_held(db, pending_run.id)

    def test_duplicate_dispatch_is_ignored_while_in_flight(self, runtime, pending_run, gate):
        first = runtime.pool.dispatch(pending_run.id)
        second = runtime.pool.dispatch(pending_run.id)

        assert second is None
        assert pending_run.id in runtime.pool.in_flight()
        gate.set()
        assert first.result(timeout=10) == "success"

    def test_leased_dispatch_waits_for_in_flight_worker(self, runtime, pending_run, gate):
        first = runtime.pool.dispatch(pending_run.id)
        deferred = runtime.pool.dispatch(pending_run.id, holder_id="test-host:1:resume")

        assert deferred is not None
        assert not deferred.done()
        gate.set()
        assert first.result(timeout=10) == "success"
        # The run already finished; the deferred worker only observes it
        assert deferred.result(timeout=10) == "success"
        assert pending_run.id not in runtime.pool.in_flight()

    def test_run_leased_elsewhere_is_skipped(self, runtime, pending_run, gate):
        gate.set()
        with session_scope(runtime.session_factory) as db:
            runtime.leases.acquire(db, pending_run.id, "other-host:1:abc")

        assert runtime.pool.dispatch(pending_run.id).result(timeout=10) is None
        assert runtime.controller.get_status(pending_run.id).status == "pending"

    def test_background_failure_propagates_to_future(self, runtime):
        def boom():
            raise RuntimeError("ingestion broke")

        future = runtime.pool.submit_background(boom)

        with pytest.raises(RuntimeError, match="ingestion broke"):
            future.result(timeout=5)


# ===========================================================================
# Runtime
# ===========================================================================

class TestRuntime:
    def test_started_run_completes_and_produces_outcome(self, runtime, gate):
        gate.set()
        run = runtime.controller.start("item-1", organization_id="org-1")

        snapshot = _wait_for_status(runtime.controller, run.id, {"success", "error"})
        runtime.pool.shutdown(wait=True)

        assert snapshot.status == "success"
        with session_scope(runtime.session_factory) as db:
            outcome = ResearchOutcomeRepository(db).get_by_run(run.id)
            assert outcome is not None
            assert outcome.organization_id == "org-1"
            assert outcome.predicted_price_target == 130.0
            assert outcome.identified_brand == "Canon"

    def test_pause_and_resume_through_the_pool(self, runtime, gate):
        run = runtime.controller.start("item-1")
        _wait_for_status(runtime.controller, run.id, {"running"})

        runtime.controller.request_pause(run.id)
        gate.set()
        paused = _wait_for_status(runtime.controller, run.id, {"paused", "success"})
        assert paused.status == "paused"

        runtime.controller.resume(run.id)
        done = _wait_for_status(runtime.controller, run.id, {"success", "error"})

        assert done.status == "success"
        assert done.step_count == 8

    def test_resume_before_paused_worker_exits(self, runtime, gate):
        release_gate = threading.Event()
        original_release = runtime.pool._release

        def held_release(run_id, holder_id):
            assert release_gate.wait(timeout=10)
            original_release(run_id, holder_id)

        with patch.object(runtime.pool, "_release", side_effect=held_release):
            run = runtime.controller.start("item-1")
            _wait_for_status(runtime.controller, run.id, {"running"})
            runtime.controller.request_pause(run.id)
            gate.set()
            assert _wait_for_status(runtime.controller, run.id, {"paused", "success"}).status == "paused"
            assert run.id in runtime.pool.in_flight()

            runtime.controller.resume(run.id)
            release_gate.set()
            done = _wait_for_status(runtime.controller, run.id, {"success", "error"})

        assert done.status == "success"
        assert done.step_count == 8

    def test_recovery_sweep_dispatches_to_pool(self, runtime, pending_run, gate):
        gate.set()

        report = runtime.sweeper.sweep(now=utcnow() + timedelta(minutes=11))

        assert report.requeued_pending == [pending_run.id]
        assert _wait_for_status(runtime.controller, pending_run.id, {"success", "error"}).status == "success"
