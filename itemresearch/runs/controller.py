"""Run controller: the user-facing state machine for research runs.

    pending -> running -> paused | error | success | cancelled
    paused  -> running | cancelled
    error   -> running | cancelled
    pending -> cancelled

``success`` and ``cancelled`` are terminal.  The controller writes only the
columns it owns (status, pause flag and timestamps, error message) through
targeted UPDATE statements guarded on the status it read, so it never
clobbers a checkpoint written concurrently by the executor.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from itemresearch.activity.broadcaster import ActivityBroadcaster
from itemresearch.activity.events import CHANNEL_STATUS
from itemresearch.core.clock import utcnow
from itemresearch.core.constants import (
    RESEARCH_MODE_LOOPS,
    RESUMABLE_RUN_STATUSES,
    RUN_CANCELLED,
    RUN_ERROR,
    RUN_PAUSED,
    RUN_PENDING,
    RUN_RUNNING,
    RUN_SUCCESS,
    RUN_TYPE_MANUAL,
    RUN_TYPES,
    TERMINAL_RUN_STATUSES,
)
from itemresearch.core.errors import (
    ConcurrencyConflict,
    InvalidState,
    RetryBudgetExceeded,
    RunNotFound,
    ValidationError,
)
from itemresearch.core.settings import Settings, get_settings
from itemresearch.db.models import ResearchRun
from itemresearch.db.repositories import ResearchRunRepository
from itemresearch.db.session import session_scope
from itemresearch.pipeline.graph import PipelineGraph
from itemresearch.pipeline.lease import LeaseManager, new_holder_id
from itemresearch.pipeline.schemas import ResearchConstraints, parse_constraints
from itemresearch.research.fields import FieldConfidenceTracker
from itemresearch.research.schemas import ReadinessThresholds

logger = logging.getLogger(__name__)

# Allowed transitions: current_status -> {valid target statuses}
_TRANSITIONS: dict[str, set[str]] = {
    RUN_PENDING: {RUN_RUNNING, RUN_CANCELLED},
    RUN_RUNNING: {RUN_PAUSED, RUN_ERROR, RUN_SUCCESS, RUN_CANCELLED},
    RUN_PAUSED: {RUN_RUNNING, RUN_CANCELLED},
    RUN_ERROR: {RUN_RUNNING, RUN_CANCELLED},
}

PinsLoader = Callable[[Session], dict[str, str]]


class RunDispatcher(Protocol):
    def dispatch(self, run_id: UUID, holder_id: str | None = None) -> Any: ...


class RunSnapshot(BaseModel):
    id: UUID
    item_id: str
    organization_id: str | None
    run_type: str
    status: str
    research_mode: str
    pipeline_version: str
    current_node: str | None
    step_count: int
    retry_budget: int
    budget_remaining: int
    pause_requested: bool
    resumable: bool
    stoppable: bool
    completion_score: float
    ready_to_publish: bool
    missing_required: list[str]
    canonical_fields: dict[str, Any]
    research_cost_usd: float
    error_message: str | None
    summary: str | None
    created_at: datetime | None
    started_at: datetime | None
    paused_at: datetime | None
    completed_at: datetime | None


def snapshot_run(run: ResearchRun) -> RunSnapshot:
    constraints = parse_constraints(run.research_constraints)
    tracker = FieldConfidenceTracker.from_payload(
        run.field_states, confirm_threshold=constraints.confirm_threshold
    )
    report = tracker.readiness(
        ReadinessThresholds(
            completion_threshold=constraints.completion_threshold,
            confirm_threshold=constraints.confirm_threshold,
        )
    )
    exhausted = constraints.budget_exhausted(run.step_count)
    return RunSnapshot(
        id=run.id,
        item_id=run.item_id,
        organization_id=run.organization_id,
        run_type=run.run_type,
        status=run.status,
        research_mode=run.research_mode,
        pipeline_version=run.pipeline_version,
        current_node=run.current_node,
        step_count=run.step_count,
        retry_budget=constraints.retry_budget,
        budget_remaining=max(0, constraints.retry_budget - run.step_count),
        pause_requested=run.pause_requested,
        resumable=run.status in RESUMABLE_RUN_STATUSES and not exhausted,
        stoppable=run.status not in TERMINAL_RUN_STATUSES,
        completion_score=report.completion_score,
        ready_to_publish=report.ready_to_publish,
        missing_required=report.missing_required,
        canonical_fields=tracker.canonical_fields(),
        research_cost_usd=run.research_cost_usd or 0.0,
        error_message=run.error_message,
        summary=run.summary,
        created_at=run.created_at,
        started_at=run.started_at,
        paused_at=run.paused_at,
        completed_at=run.completed_at,
    )


class RunController:
    """Start, pause, resume, stop and inspect research runs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: RunDispatcher,
        leases: LeaseManager,
        graph: PipelineGraph,
        settings: Settings | None = None,
        broadcaster: ActivityBroadcaster | None = None,
        pins_loader: PinsLoader | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.leases = leases
        self.graph = graph
        self.settings = settings or get_settings()
        self.broadcaster = broadcaster
        self._pins_loader = pins_loader

    def can_transition(self, current_status: str, to_status: str) -> bool:
        """Return whether *current_status* -> *to_status* is allowed."""
        return to_status in _TRANSITIONS.get(current_status, set())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start(
        self,
        item_id: str,
        run_type: str = RUN_TYPE_MANUAL,
        mode: str = "balanced",
        organization_id: str | None = None,
        completion_threshold: float | None = None,
    ) -> RunSnapshot:
        """Create a pending run for *item_id* and hand it to a worker.

        *completion_threshold* overrides the configured readiness bar for this
        run (an organization's own setting); it is pinned with the other
        constraints and cannot change afterwards.
        """
        if not item_id or not item_id.strip():
            raise ValidationError("item_id must be a non-empty string")
        if run_type not in RUN_TYPES:
            raise ValidationError(f"Invalid run_type {run_type!r}; must be one of {sorted(RUN_TYPES)}")
        if mode not in RESEARCH_MODE_LOOPS:
            raise ValidationError(f"Invalid research mode {mode!r}; must be one of {sorted(RESEARCH_MODE_LOOPS)}")
        if completion_threshold is not None and not 0.0 <= completion_threshold <= 1.0:
            raise ValidationError(f"completion_threshold must be between 0 and 1, got {completion_threshold}")

        try:
            with session_scope(self._session_factory) as db:
                repo = ResearchRunRepository(db)
                active = repo.get_active_for_item(item_id)
                if active is not None:
                    raise ConcurrencyConflict(
                        f"Item {item_id} already has an active run {active.id} ({active.status})"
                    )
                constraints = self._constraints_for(db, mode, completion_threshold)
                tracker = FieldConfidenceTracker.with_default_fields(constraints.confirm_threshold)
                run = repo.create(
                    item_id=item_id,
                    organization_id=organization_id,
                    run_type=run_type,
                    status=RUN_PENDING,
                    pipeline_version=self.graph.version,
                    research_mode=mode,
                    research_constraints=constraints.model_dump(mode="json"),
                    field_states=tracker.to_payload(),
                    step_history=[],
                    context_data={},
                )
                snapshot = snapshot_run(run)
        except IntegrityError as exc:
            raise ConcurrencyConflict(f"Item {item_id} already has an active run") from exc

        logger.info("Run %s created for item %s (mode=%s)", snapshot.id, item_id, mode)
        self._publish(snapshot)
        self.dispatcher.dispatch(snapshot.id)
        return snapshot

    def request_pause(self, run_id: UUID) -> RunSnapshot:
        """Ask the executor to pause at the next node boundary. Idempotent."""
        with session_scope(self._session_factory) as db:
            run = self._get(db, run_id)
            if run.status != RUN_RUNNING:
                raise InvalidState(f"Cannot pause run in status {run.status!r}", run.status)
            if not run.pause_requested:
                self._guarded_update(db, run, pause_requested=True)
            db.refresh(run)
            snapshot = snapshot_run(run)
        logger.info("Pause requested for run %s", run_id)
        return snapshot

    def resume(self, run_id: UUID) -> RunSnapshot:
        """Continue a paused or failed run from its last checkpoint."""
        holder_id = new_holder_id()
        try:
            with session_scope(self._session_factory) as db:
                run = self._get(db, run_id)
                if run.status not in RESUMABLE_RUN_STATUSES:
                    raise InvalidState(f"Cannot resume run in status {run.status!r}", run.status)
                constraints = parse_constraints(run.research_constraints)
                if constraints.budget_exhausted(run.step_count):
                    raise RetryBudgetExceeded(run.step_count, constraints.retry_budget)

                other = ResearchRunRepository(db).get_active_for_item(run.item_id, exclude_run_id=run.id)
                if other is not None:
                    raise ConcurrencyConflict(f"Item {run.item_id} already has an active run {other.id}")
                if not self.leases.acquire(db, run.id, holder_id):
                    raise ConcurrencyConflict(f"Run {run_id} is still held by another worker")

                self._guarded_update(
                    db,
                    run,
                    status=RUN_RUNNING,
                    pause_requested=False,
                    paused_at=None,
                    error_message=None,
                    completed_at=None,
                )
                db.refresh(run)
                snapshot = snapshot_run(run)
        except IntegrityError as exc:
            raise ConcurrencyConflict(f"Run {run_id} conflicts with another active run") from exc

        logger.info("Run %s resumed at step %d", run_id, snapshot.step_count)
        self._publish(snapshot)
        self.dispatcher.dispatch(run_id, holder_id)
        return snapshot

    def stop(self, run_id: UUID) -> RunSnapshot:
        """Cancel a run immediately; an in-flight node finishes and is checkpointed."""
        with session_scope(self._session_factory) as db:
            run = self._get(db, run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                raise InvalidState(f"Cannot stop run in status {run.status!r}", run.status)
            self._guarded_update(
                db,
                run,
                status=RUN_CANCELLED,
                pause_requested=False,
                completed_at=utcnow(),
            )
            db.refresh(run)
            snapshot = snapshot_run(run)
        logger.info("Run %s stopped", run_id)
        self._publish(snapshot)
        return snapshot

    def get_status(self, run_id: UUID) -> RunSnapshot:
        db = self._session_factory()
        try:
            return snapshot_run(self._get(db, run_id))
        finally:
            db.close()

    def list_item_runs(self, item_id: str, limit: int = 50) -> list[RunSnapshot]:
        db = self._session_factory()
        try:
            return [snapshot_run(run) for run in ResearchRunRepository(db).list_for_item(item_id, limit=limit)]
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, db: Session, run_id: UUID) -> ResearchRun:
        run = db.get(ResearchRun, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def _guarded_update(self, db: Session, run: ResearchRun, **values: Any) -> None:
        """UPDATE controller-owned columns only if the status is still what we read."""
        target = values.get("status", run.status)
        if target != run.status and not self.can_transition(run.status, target):
            raise InvalidState(f"Invalid transition {run.status!r} -> {target!r}", run.status)
        result = db.execute(
            update(ResearchRun)
            .where(ResearchRun.id == run.id, ResearchRun.status == run.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(f"Run {run.id} changed state concurrently; retry the request")

    def _constraints_for(
        self, db: Session, mode: str, completion_threshold: float | None = None
    ) -> ResearchConstraints:
        pins = self._pins_loader(db) if self._pins_loader is not None else {}
        return ResearchConstraints(
            retry_max_attempts=self.settings.retry_max_attempts,
            retry_node_count=self.settings.retry_node_count or self.graph.node_count,
            node_max_attempts=self.settings.node_max_attempts,
            max_research_loops=RESEARCH_MODE_LOOPS[mode],
            completion_threshold=(
                self.settings.completion_threshold if completion_threshold is None else completion_threshold
            ),
            confirm_threshold=self.settings.confirm_threshold,
            calibration_versions=pins,
        )

    def _publish(self, snapshot: RunSnapshot) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(
            CHANNEL_STATUS,
            snapshot.id,
            snapshot.organization_id,
            {
                "item_id": snapshot.item_id,
                "status": snapshot.status,
                "step_count": snapshot.step_count,
                "error_message": snapshot.error_message,
            },
        )
