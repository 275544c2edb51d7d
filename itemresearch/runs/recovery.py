"""Restart recovery for runs abandoned by a crashed or restarted worker.

- ``running`` runs whose lease is missing or expired are re-dispatched; the
  executor resumes them from their last checkpoint.
- ``pending`` runs older than ``stalled_pending_minutes`` that no worker
  picked up are re-dispatched.
- Optionally, ``error`` runs with a checkpoint and budget left are resumed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from itemresearch.core.clock import utcnow
from itemresearch.core.constants import RUN_ERROR
from itemresearch.core.errors import ResearchError
from itemresearch.core.settings import Settings, get_settings
from itemresearch.db.models import ResearchRun
from itemresearch.db.repositories import ResearchRunRepository
from itemresearch.pipeline.schemas import parse_constraints
from itemresearch.runs.controller import RunController, RunDispatcher

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    requeued_running: list[UUID] = field(default_factory=list)
    requeued_pending: list[UUID] = field(default_factory=list)
    resumed_errors: list[UUID] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued_running) + len(self.requeued_pending) + len(self.resumed_errors)


class RecoverySweeper:
    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: RunDispatcher,
        controller: RunController | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.controller = controller
        self.settings = settings or get_settings()

    def sweep(self, now: datetime | None = None) -> RecoveryReport:
        now = now or utcnow()
        report = RecoveryReport()

        db = self._session_factory()
        try:
            repo = ResearchRunRepository(db)
            orphaned = [run.id for run in repo.list_orphaned_running(now)]
            stale = [
                run.id for run in repo.list_stale_pending(now - timedelta(minutes=self.settings.stalled_pending_minutes))
            ]
            resumable = self._resumable_errors(db) if self.settings.recovery_resume_errors else []
        finally:
            db.close()

        for run_id in orphaned:
            logger.warning("Recovering orphaned running run %s", run_id)
            self.dispatcher.dispatch(run_id)
            report.requeued_running.append(run_id)

        for run_id in stale:
            logger.warning("Re-dispatching stale pending run %s", run_id)
            self.dispatcher.dispatch(run_id)
            report.requeued_pending.append(run_id)

        if self.controller is not None:
            for run_id in resumable:
                try:
                    self.controller.resume(run_id)
                except ResearchError as exc:
                    logger.info("Run %s not auto-resumed: %s", run_id, exc)
                    continue
                report.resumed_errors.append(run_id)

        if report.total:
            logger.info(
                "Recovery sweep: %d running, %d pending, %d error run(s) re-dispatched",
                len(report.requeued_running), len(report.requeued_pending), len(report.resumed_errors),
            )
        return report

    def _resumable_errors(self, db) -> list[UUID]:
        stmt = select(ResearchRun).where(ResearchRun.status == RUN_ERROR).order_by(ResearchRun.updated_at.asc())
        run_ids = []
        for run in db.execute(stmt).scalars():
            if not run.step_history:
                continue
            if parse_constraints(run.research_constraints).budget_exhausted(run.step_count):
                continue
            run_ids.append(run.id)
        return run_ids
