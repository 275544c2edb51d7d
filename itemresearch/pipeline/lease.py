"""Per-run execution leases.

A lease row grants one holder the exclusive right to execute a run until
``expires_at``.  Holders renew it at every attempt start and checkpoint; a
lease that is not renewed expires and any worker may take it over.

All methods flush but do **not** commit; the caller controls the
transaction.  Time comparisons happen in SQL so stored timestamps are
never compared against Python datetimes of a different timezone flavour.
"""
from __future__ import annotations

import logging
import os
import socket
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from itemresearch.core.clock import utcnow
from itemresearch.core.errors import ConcurrencyConflict
from itemresearch.db.models import RunLease

logger = logging.getLogger(__name__)


class LeaseManager:
    def __init__(self, ttl_s: int = 300) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.ttl = timedelta(seconds=ttl_s)

    def acquire(self, db: Session, run_id: UUID, holder_id: str, now: datetime | None = None) -> bool:
        """Take the lease if it is free or expired. Returns False if someone else holds it."""
        now = now or utcnow()
        expires = now + self.ttl

        takeover = db.execute(
            update(RunLease)
            .where(RunLease.run_id == run_id, RunLease.expires_at <= now)
            .values(holder_id=holder_id, acquired_at=now, expires_at=expires)
            .execution_options(synchronize_session=False)
        )
        if takeover.rowcount == 1:
            logger.info("Lease taken over: run=%s holder=%s", run_id, holder_id)
            return True

        existing = db.execute(select(RunLease.run_id).where(RunLease.run_id == run_id)).first()
        if existing is not None:
            logger.debug("Lease busy: run=%s", run_id)
            return False

        try:
            with db.begin_nested():
                db.add(RunLease(run_id=run_id, holder_id=holder_id, acquired_at=now, expires_at=expires))
                db.flush()
        except IntegrityError:
            logger.debug("Lease busy: run=%s", run_id)
            return False

        logger.info("Lease acquired: run=%s holder=%s", run_id, holder_id)
        return True

    def renew(self, db: Session, run_id: UUID, holder_id: str, now: datetime | None = None) -> None:
        """Extend a live lease held by *holder_id*; raise ``ConcurrencyConflict`` if it was lost."""
        now = now or utcnow()
        result = db.execute(
            update(RunLease)
            .where(
                RunLease.run_id == run_id,
                RunLease.holder_id == holder_id,
                RunLease.expires_at > now,
            )
            .values(expires_at=now + self.ttl)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(f"Lease for run {run_id} is no longer held by {holder_id}")

    def release(self, db: Session, run_id: UUID, holder_id: str) -> bool:
        result = db.execute(
            delete(RunLease)
            .where(RunLease.run_id == run_id, RunLease.holder_id == holder_id)
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            logger.info("Lease released: run=%s holder=%s", run_id, holder_id)
        return released

    def is_held(self, db: Session, run_id: UUID, now: datetime | None = None) -> bool:
        """Return True if a live (unexpired) lease exists for *run_id*."""
        now = now or utcnow()
        stmt = select(RunLease.run_id).where(RunLease.run_id == run_id, RunLease.expires_at > now)
        return db.execute(stmt).first() is not None

    def holder(self, db: Session, run_id: UUID, now: datetime | None = None) -> str | None:
        now = now or utcnow()
        stmt = select(RunLease.holder_id).where(RunLease.run_id == run_id, RunLease.expires_at > now)
        return db.execute(stmt).scalar_one_or_none()


def new_holder_id() -> str:
    """Identify this process and one execution session within it."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:12]}"
