from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from itemresearch.core.constants import ACTIVE_RUN_STATUSES, RUN_PENDING, RUN_RUNNING
from itemresearch.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class ResearchRunRepository(BaseRepository[models.ResearchRun]):
    model = models.ResearchRun

    def get_active_for_item(self, item_id: str, exclude_run_id: UUID | None = None) -> models.ResearchRun | None:
        stmt = select(models.ResearchRun).where(
            models.ResearchRun.item_id == item_id,
            models.ResearchRun.status.in_(ACTIVE_RUN_STATUSES),
        )
        if exclude_run_id is not None:
            stmt = stmt.where(models.ResearchRun.id != exclude_run_id)
        return self.db.execute(stmt.limit(1)).scalars().first()

    def list_for_item(self, item_id: str, limit: int = 50) -> list[models.ResearchRun]:
        stmt = (
            select(models.ResearchRun)
            .where(models.ResearchRun.item_id == item_id)
            .order_by(models.ResearchRun.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_orphaned_running(self, now: datetime) -> list[models.ResearchRun]:
        """Return running runs with no lease or an expired one."""
        stmt = (
            select(models.ResearchRun)
            .outerjoin(models.RunLease, models.RunLease.run_id == models.ResearchRun.id)
            .where(
                models.ResearchRun.status == RUN_RUNNING,
                or_(models.RunLease.run_id.is_(None), models.RunLease.expires_at <= now),
            )
            .order_by(models.ResearchRun.updated_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_stale_pending(self, created_before: datetime) -> list[models.ResearchRun]:
        """Return pending runs older than *created_before* that nobody leased."""
        stmt = (
            select(models.ResearchRun)
            .outerjoin(models.RunLease, models.RunLease.run_id == models.ResearchRun.id)
            .where(
                and_(
                    models.ResearchRun.status == RUN_PENDING,
                    models.ResearchRun.created_at <= created_before,
                    models.RunLease.run_id.is_(None),
                )
            )
            .order_by(models.ResearchRun.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class ResearchOutcomeRepository(BaseRepository[models.ResearchOutcome]):
    model = models.ResearchOutcome

    def get_by_run(self, run_id: UUID) -> models.ResearchOutcome | None:
        stmt = select(models.ResearchOutcome).where(models.ResearchOutcome.research_run_id == run_id)
        return self.db.execute(stmt).scalars().first()

    def list_recent(
        self,
        organization_id: str | None,
        since: datetime,
        exclude_id: UUID | None = None,
    ) -> list[models.ResearchOutcome]:
        stmt = select(models.ResearchOutcome).where(
            models.ResearchOutcome.organization_id == organization_id,
            models.ResearchOutcome.created_at >= since,
        )
        if exclude_id is not None:
            stmt = stmt.where(models.ResearchOutcome.id != exclude_id)
        stmt = stmt.order_by(models.ResearchOutcome.created_at.asc())
        return list(self.db.execute(stmt).scalars().all())


class ResearchAnomalyRepository(BaseRepository[models.ResearchAnomaly]):
    model = models.ResearchAnomaly

    def find_unresolved(
        self,
        organization_id: str | None,
        anomaly_type: str,
        tool_type: str | None = None,
    ) -> models.ResearchAnomaly | None:
        stmt = select(models.ResearchAnomaly).where(
            models.ResearchAnomaly.organization_id == organization_id,
            models.ResearchAnomaly.anomaly_type == anomaly_type,
            models.ResearchAnomaly.resolved.is_(False),
        )
        if tool_type is None:
            stmt = stmt.where(models.ResearchAnomaly.tool_type.is_(None))
        else:
            stmt = stmt.where(models.ResearchAnomaly.tool_type == tool_type)
        return self.db.execute(stmt.limit(1)).scalars().first()


class CalibrationResultRepository(BaseRepository[models.CalibrationResult]):
    model = models.CalibrationResult

    def get_active(self, tool_family: str) -> models.CalibrationResult | None:
        stmt = select(models.CalibrationResult).where(
            models.CalibrationResult.tool_family == tool_family,
            models.CalibrationResult.is_active.is_(True),
        )
        return self.db.execute(stmt).scalars().first()

    def list_active(self) -> list[models.CalibrationResult]:
        stmt = (
            select(models.CalibrationResult)
            .where(models.CalibrationResult.is_active.is_(True))
            .order_by(models.CalibrationResult.tool_family.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def history(self, tool_family: str) -> list[models.CalibrationResult]:
        stmt = (
            select(models.CalibrationResult)
            .where(models.CalibrationResult.tool_family == tool_family)
            .order_by(models.CalibrationResult.version.desc())
        )
        return list(self.db.execute(stmt).scalars().all())
