"""Tests for itemresearch/runs/recovery.py — restart recovery sweep."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from itemresearch.activity import activity_log
from itemresearch.core.clock import utcnow
from itemresearch.core.settings import Settings
from itemresearch.db.models import ResearchRun
from itemresearch.db.session import session_scope
from itemresearch.runs.recovery import RecoverySweeper


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

@pytest.fixture()
def sweeper(session_factory, dispatcher, controller, settings):
    return RecoverySweeper(session_factory, dispatcher, controller, settings)


def _force(session_factory, run_id, **values):
    with session_scope(session_factory) as db:
        db.execute(update(ResearchRun).where(ResearchRun.id == run_id).values(**values))


def _history(*nodes):
    now = utcnow().isoformat()
    return [
        {"node": node, "attempt_number": 1, "started_at": now, "completed_at": now, "outcome": "success"}
        for node in nodes
    ]


# ===========================================================================
# Orphaned running runs
# ===========================================================================

class TestOrphanedRunning:
    def test_running_without_lease_is_redispatched(self, controller, dispatcher, session_factory, sweeper):
        run = controller.start("item-1")
        _force(session_factory, run.id, status="running")
        dispatcher.calls.clear()

        report = sweeper.sweep()

        assert report.requeued_running == [run.id]
        assert dispatcher.calls == [(run.id, None)]

    def test_live_lease_is_left_alone(self, controller, dispatcher, leases, session_factory, sweeper):
        run = controller.start("item-1")
        _force(session_factory, run.id, status="running")
        with session_scope(session_factory) as db:
            leases.acquire(db, run.id, "busy-worker")
        dispatcher.calls.clear()

        report = sweeper.sweep()

        assert report.total == 0
        assert dispatcher.calls == []

    def test_expired_lease_is_recovered(self, controller, leases, session_factory, sweeper):
        run = controller.start("item-1")
        _force(session_factory, run.id, status="running")
        with session_scope(session_factory) as db:
            leases.acquire(db, run.id, "crashed-worker")

        report = sweeper.sweep(now=utcnow() + timedelta(seconds=301))

        assert report.requeued_running == [run.id]

    def test_recovered_run_resumes_from_checkpoint(self, controller, store, dispatcher, sweeper, drive):
        run = controller.start("item-1")
        real_append = activity_log.append_entries
        calls = {"n": 0}

        def fail_third_checkpoint(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 3:
                raise OperationalError("INSERT INTO activity_log", {}, Exception("server closed the connection"))
            return real_append(*args, **kwargs)

        with patch("itemresearch.pipeline.checkpoint.append_entries", side_effect=fail_third_checkpoint):
            assert drive(run.id) == "running"
        assert [e.node for e in store.load(run.id).step_history] == ["load_context", "analyze_media"]

        report = sweeper.sweep()
        run_id, holder_id = dispatcher.calls[-1]

        assert report.requeued_running == [run.id]
        assert drive(run_id, holder_id) == "success"
        state = store.load(run.id)
        assert [e.node for e in state.step_history].count("identify_product") == 1
        assert state.step_count == 9


# ===========================================================================
# Stale pending runs
# ===========================================================================

class TestStalePending:
    def test_old_pending_run_is_redispatched(self, controller, dispatcher, sweeper):
        run = controller.start("item-1")
        dispatcher.calls.clear()

        report = sweeper.sweep(now=utcnow() + timedelta(minutes=11))

        assert report.requeued_pending == [run.id]
        assert dispatcher.calls == [(run.id, None)]

    def test_fresh_pending_run_is_left_alone(self, controller, sweeper):
        controller.start("item-1")

        assert sweeper.sweep().total == 0

    def test_leased_pending_run_is_left_alone(self, controller, leases, session_factory, sweeper):
        run = controller.start("item-1")
        with session_scope(session_factory) as db:
            leases.acquire(db, run.id, "starting-worker")

        assert sweeper.sweep(now=utcnow() + timedelta(minutes=11)).requeued_pending == []


# ===========================================================================
# Failed runs
# ===========================================================================

class TestErrorRuns:
    @pytest.fixture()
    def resuming_sweeper(self, session_factory, dispatcher, controller):
        settings = Settings(database_url="sqlite+pysqlite:///:memory:", recovery_resume_errors=True)
        return RecoverySweeper(session_factory, dispatcher, controller, settings)

    def test_not_resumed_by_default(self, controller, session_factory, sweeper):
        run = controller.start("item-1")
        _force(session_factory, run.id, status="error", step_count=3, step_history=_history("load_context"))

        assert sweeper.sweep().resumed_errors == []

    def test_resumed_when_enabled(self, controller, dispatcher, session_factory, resuming_sweeper):
        run = controller.start("item-1")
        _force(session_factory, run.id, status="error", step_count=3, step_history=_history("load_context"))

        report = resuming_sweeper.sweep()

        assert report.resumed_errors == [run.id]
        assert controller.get_status(run.id).status == "running"
        assert dispatcher.calls[-1][0] == run.id
        assert dispatcher.calls[-1][1] is not None

    def test_exhausted_or_empty_runs_skipped(self, controller, session_factory, resuming_sweeper):
        exhausted = controller.start("item-1")
        _force(session_factory, exhausted.id, status="error", step_count=24, step_history=_history("load_context"))
        empty = controller.start("item-2")
        _force(session_factory, empty.id, status="error", step_count=1)

        report = resuming_sweeper.sweep()

        assert report.resumed_errors == []
        assert controller.get_status(exhausted.id).status == "error"
        assert controller.get_status(empty.id).status == "error"
