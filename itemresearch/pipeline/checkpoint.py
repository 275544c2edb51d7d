"""Checkpoint store: the only write path for executor-owned run state.

Each method is one transaction that

1. verifies and renews the caller's lease,
2. appends activity entries with the next sequence numbers,
3. updates the run row with ``WHERE checkpoint_version = <expected>``.

If any step fails, nothing from the attempt is persisted: a lost lease or a
version mismatch raises ``ConcurrencyConflict``; a database error raises
``PersistenceError``.  Broadcasts happen only after the commit.

Checkpoints never write ``status``.  ``finalize()`` is the exception, and it
only moves a run out of ``running`` (``WHERE status = 'running'``), so a
concurrent stop always wins.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from itemresearch.activity.activity_log import ActivityDraft, append_entries, entry_to_dict
from itemresearch.activity.broadcaster import ActivityBroadcaster
from itemresearch.activity.events import CHANNEL_ACTIVITY, CHANNEL_STATUS
from itemresearch.core.clock import utcnow
from itemresearch.core.constants import RUN_PAUSED, RUN_PENDING, RUN_RUNNING
from itemresearch.core.errors import ConcurrencyConflict, PersistenceError, RunNotFound, ValidationError
from itemresearch.db.models import ResearchRun
from itemresearch.pipeline.lease import LeaseManager
from itemresearch.pipeline.schemas import RunState, StepHistoryEntry, parse_constraints

logger = logging.getLogger(__name__)


@dataclass
class CommittedCheckpoint:
    state: RunState
    entries: list[dict[str, Any]] = field(default_factory=list)


def state_from_row(run: ResearchRun) -> RunState:
    try:
        return RunState(
            id=run.id,
            item_id=run.item_id,
            organization_id=run.organization_id,
            status=run.status,
            pause_requested=run.pause_requested,
            research_mode=run.research_mode,
            current_node=run.current_node,
            step_count=run.step_count,
            step_history=run.step_history or [],
            field_states=run.field_states or {},
            context_data=run.context_data or {},
            research_cost_usd=run.research_cost_usd or 0.0,
            constraints=parse_constraints(run.research_constraints),
            log_sequence=run.log_sequence,
            checkpoint_version=run.checkpoint_version,
        )
    except PydanticValidationError as exc:
        raise ValidationError(f"Stored state of run {run.id} is malformed: {exc.error_count()} error(s)") from exc


class CheckpointStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        leases: LeaseManager,
        broadcaster: ActivityBroadcaster | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.leases = leases
        self.broadcaster = broadcaster

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"Checkpoint write failed: {type(exc).__name__}") from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, run_id: UUID) -> RunState:
        db = self._session_factory()
        try:
            run = db.get(ResearchRun, run_id)
            if run is None:
                raise RunNotFound(run_id)
            return state_from_row(run)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load run {run_id}: {type(exc).__name__}") from exc
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def begin_run(self, state: RunState, holder_id: str) -> RunState:
        """Move a freshly picked-up pending run to running."""
        if state.status != RUN_PENDING:
            return state
        now = utcnow()
        with self._transaction() as db:
            self.leases.renew(db, state.id, holder_id, now=now)
            result = db.execute(
                update(ResearchRun)
                .where(ResearchRun.id == state.id, ResearchRun.status == RUN_PENDING)
                .values(status=RUN_RUNNING, started_at=now)
                .execution_options(synchronize_session=False)
            )
            started = result.rowcount == 1
        if not started:
            return self.load(state.id)
        self._publish_status(state, RUN_RUNNING)
        return state.model_copy(update={"status": RUN_RUNNING})

    def begin_attempt(self, state: RunState, holder_id: str) -> RunState:
        """Count one attempt against the budget before the node runs."""
        with self._transaction() as db:
            self.leases.renew(db, state.id, holder_id)
            self._versioned_update(
                db,
                state,
                step_count=ResearchRun.step_count + 1,
            )
        return state.model_copy(update={
            "step_count": state.step_count + 1,
            "checkpoint_version": state.checkpoint_version + 1,
        })

    def commit_step(
        self,
        state: RunState,
        holder_id: str,
        entry: StepHistoryEntry,
        drafts: list[ActivityDraft],
        field_states: dict[str, dict[str, Any]] | None = None,
        context_data: dict[str, Any] | None = None,
        cost_delta: float = 0.0,
    ) -> CommittedCheckpoint:
        """Append *entry* to the history together with its side effects.

        A success entry also moves ``current_node``; a failure entry leaves
        it on the last successful node.
        """
        history = [*state.step_history, entry]
        values: dict[str, Any] = {
            "step_history": [e.model_dump(mode="json") for e in history],
            "log_sequence": state.log_sequence + len(drafts),
        }
        updates: dict[str, Any] = {
            "step_history": history,
            "log_sequence": state.log_sequence + len(drafts),
            "checkpoint_version": state.checkpoint_version + 1,
        }
        if entry.outcome == "success":
            values["current_node"] = entry.node
            updates["current_node"] = entry.node
        if field_states is not None:
            values["field_states"] = field_states
            updates["field_states"] = field_states
        if context_data is not None:
            values["context_data"] = context_data
            updates["context_data"] = context_data
        if cost_delta:
            values["research_cost_usd"] = round(state.research_cost_usd + cost_delta, 6)
            updates["research_cost_usd"] = values["research_cost_usd"]

        with self._transaction() as db:
            self.leases.renew(db, state.id, holder_id)
            entries = append_entries(
                db, state.id, state.item_id, state.organization_id, state.log_sequence, drafts
            )
            self._versioned_update(db, state, **values)
            payloads = [entry_to_dict(e) for e in entries]

        self._publish_activity(state, payloads)
        return CommittedCheckpoint(state=state.model_copy(update=updates), entries=payloads)

    def finalize(
        self,
        state: RunState,
        holder_id: str,
        status: str,
        drafts: list[ActivityDraft],
        summary: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a running run to *status* and give up its lease.

        Returns False if the run was no longer running.
        """
        now = utcnow()
        values: dict[str, Any] = {
            "status": status,
            "log_sequence": state.log_sequence + len(drafts),
        }
        if status == RUN_PAUSED:
            values.update(paused_at=now, pause_requested=False)
        else:
            values.update(completed_at=now)
        if summary is not None:
            values["summary"] = summary
        if error_message is not None:
            values["error_message"] = error_message

        with self._transaction() as db:
            self.leases.renew(db, state.id, holder_id, now=now)
            entries = append_entries(
                db, state.id, state.item_id, state.organization_id, state.log_sequence, drafts
            )
            result = db.execute(
                update(ResearchRun)
                .where(
                    ResearchRun.id == state.id,
                    ResearchRun.status == RUN_RUNNING,
                    ResearchRun.checkpoint_version == state.checkpoint_version,
                )
                .values(checkpoint_version=ResearchRun.checkpoint_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                logger.info("Run %s left running before finalize(%s)", state.id, status)
                return False
            # A resume may follow immediately; it must find the lease free.
            self.leases.release(db, state.id, holder_id)
            payloads = [entry_to_dict(e) for e in entries]

        self._publish_activity(state, payloads)
        self._publish_status(state, status, error_message=error_message)
        return True

    def _versioned_update(self, db: Session, state: RunState, **values: Any) -> None:
        result = db.execute(
            update(ResearchRun)
            .where(
                ResearchRun.id == state.id,
                ResearchRun.checkpoint_version == state.checkpoint_version,
            )
            .values(checkpoint_version=ResearchRun.checkpoint_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"Run {state.id} checkpoint moved past version {state.checkpoint_version}"
            )

    # ------------------------------------------------------------------
    # Broadcast (post-commit only)
    # ------------------------------------------------------------------

    def _publish_activity(self, state: RunState, payloads: list[dict[str, Any]]) -> None:
        if self.broadcaster is None:
            return
        for payload in payloads:
            self.broadcaster.publish(CHANNEL_ACTIVITY, state.id, state.organization_id, payload)

    def _publish_status(self, state: RunState, status: str, error_message: str | None = None) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(
            CHANNEL_STATUS,
            state.id,
            state.organization_id,
            {"item_id": state.item_id, "status": status, "error_message": error_message},
        )
