"""Worker pool: each worker executes at most one run at a time.

A dispatched run either arrives with a lease already acquired (resume) or
the worker acquires one first; a run whose lease is busy is skipped.  The
lease is released when the executor returns, whatever the outcome.

A dispatch that brings its own lease while the run is still in flight (a
resume landing before the paused worker has exited) is held back and started
as soon as the current worker finishes.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from itemresearch.db.session import session_scope
from itemresearch.pipeline.executor import PipelineExecutor
from itemresearch.pipeline.lease import LeaseManager, new_holder_id

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(
        self,
        session_factory: sessionmaker,
        executor: PipelineExecutor,
        leases: LeaseManager,
        max_workers: int = 4,
    ) -> None:
        self._session_factory = session_factory
        self.executor = executor
        self.leases = leases
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="research-worker")
        self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="research-background")
        self._in_flight: set[UUID] = set()
        self._queued: dict[UUID, tuple[str, Future]] = {}
        self._lock = threading.Lock()

    def dispatch(self, run_id: UUID, holder_id: str | None = None) -> Future | None:
        """Queue *run_id* for execution.

        Returns None if this process is already running it and the dispatch
        holds no lease.  A leased dispatch for an in-flight run is deferred
        until that run's worker exits; the returned future tracks it.
        """
        previous = None
        waiter: Future | None = None
        with self._lock:
            if run_id not in self._in_flight:
                self._in_flight.add(run_id)
            elif holder_id is None:
                logger.info("Run %s already in flight in this process", run_id)
                return None
            else:
                waiter = Future()
                previous = self._queued.get(run_id)
                self._queued[run_id] = (holder_id, waiter)
                logger.info("Run %s still in flight; deferring dispatch for holder %s", run_id, holder_id)
        if previous is not None:
            # Superseded by the newer holder
            previous[1].set_result(None)
        if waiter is not None:
            return waiter
        return self._pool.submit(self._work, run_id, holder_id)

    def submit_background(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run follow-up work (outcome ingestion) off the worker threads."""
        return self._background.submit(self._guarded, fn, *args)

    def in_flight(self) -> set[UUID]:
        with self._lock:
            return set(self._in_flight)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self._background.shutdown(wait=wait)

    # ------------------------------------------------------------------

    def _work(self, run_id: UUID, holder_id: str | None) -> str | None:
        try:
            if holder_id is None:
                holder_id = new_holder_id()
                with session_scope(self._session_factory) as db:
                    acquired = self.leases.acquire(db, run_id, holder_id)
                if not acquired:
                    logger.info("Run %s is leased elsewhere; skipping", run_id)
                    return None
            try:
                return self.executor.execute(run_id, holder_id)
            finally:
                self._release(run_id, holder_id)
        except Exception:
            logger.exception("Worker crashed while executing run %s", run_id)
            raise
        finally:
            with self._lock:
                queued = self._queued.pop(run_id, None)
                if queued is None:
                    self._in_flight.discard(run_id)
            if queued is not None:
                self._start_queued(run_id, *queued)

    def _start_queued(self, run_id: UUID, holder_id: str, waiter: Future) -> None:
        # The run stays in flight; the deferred worker inherits the slot.
        try:
            future = self._pool.submit(self._work, run_id, holder_id)
        except RuntimeError as exc:
            # Pool shut down; the sweeper picks the run up after its lease expires.
            with self._lock:
                self._in_flight.discard(run_id)
            waiter.set_exception(exc)
            return

        def _forward(done: Future) -> None:
            exc = done.exception()
            if exc is not None:
                waiter.set_exception(exc)
            else:
                waiter.set_result(done.result())

        future.add_done_callback(_forward)

    def _release(self, run_id: UUID, holder_id: str) -> None:
        try:
            with session_scope(self._session_factory) as db:
                self.leases.release(db, run_id, holder_id)
        except SQLAlchemyError:
            # The lease expires on its own; recovery handles the rest.
            logger.exception("Could not release lease for run %s", run_id)

    @staticmethod
    def _guarded(fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception:
            logger.exception("Background task %s failed", getattr(fn, "__name__", fn))
            raise
