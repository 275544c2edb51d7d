from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from itemresearch.core.clock import utcnow
from itemresearch.db.base import Base

_ACTIVE_RUN_PREDICATE = sql_text("status IN ('pending', 'running', 'paused')")


class ResearchRun(Base):
    """One execution of the research graph for one item.

    Column ownership: the controller writes status, pause_requested,
    paused_at, started_at, completed_at and error_message.  The checkpoint
    store writes everything under "checkpoint" and bumps
    ``checkpoint_version`` on every write.
    """

    __tablename__ = "research_runs"
    __table_args__ = (
        Index("ix_research_runs_item_created", "item_id", "created_at"),
        Index("ix_research_runs_status", "status"),
        # At most one pending/running/paused run per item
        Index(
            "uq_research_runs_active_item",
            "item_id",
            unique=True,
            sqlite_where=_ACTIVE_RUN_PREDICATE,
            postgresql_where=_ACTIVE_RUN_PREDICATE,
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    item_id: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    run_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default=sql_text("'pending'")
    )
    pipeline_version: Mapped[str] = mapped_column(String(64), nullable=False)
    research_mode: Mapped[str] = mapped_column(
        String(16), nullable=False, default="balanced", server_default=sql_text("'balanced'")
    )
    research_constraints: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Controller-owned
    pause_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sql_text("false")
    )
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Checkpoint
    current_node: Mapped[str | None] = mapped_column(String(64), nullable=True)
    step_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    step_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    field_states: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    context_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    research_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=sql_text("0"))
    log_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    checkpoint_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    activity: Mapped[list[ActivityLogEntry]] = relationship(back_populates="research_run")


class RunLease(Base):
    """Exclusive, time-bounded right to execute a run."""

    __tablename__ = "run_leases"

    run_id: Mapped[UUID] = mapped_column(ForeignKey("research_runs.id", ondelete="CASCADE"), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ActivityLogEntry(Base):
    """Append-only record of what happened during a run.

    Rows are never updated or deleted; see the mapper events below.
    """

    __tablename__ = "research_activity_logs"
    __table_args__ = (
        UniqueConstraint("research_run_id", "sequence", name="uq_activity_run_sequence"),
        Index("ix_activity_run_timestamp", "research_run_id", "timestamp"),
        Index("ix_activity_item_timestamp", "item_id", "timestamp"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    research_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("research_runs.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    operation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    operation_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default=sql_text("''"))
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    step_id: Mapped[str | None] = mapped_column(String(96), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    research_run: Mapped[ResearchRun] = relationship(back_populates="activity")


@event.listens_for(ActivityLogEntry, "before_update")
def _reject_activity_update(mapper, connection, target) -> None:
    raise ValueError("ActivityLogEntry rows are immutable")


@event.listens_for(ActivityLogEntry, "before_delete")
def _reject_activity_delete(mapper, connection, target) -> None:
    raise ValueError("ActivityLogEntry rows are append-only")


class ResearchOutcome(Base):
    """What a completed run predicted, joined later with what actually happened."""

    __tablename__ = "research_outcomes"
    __table_args__ = (
        UniqueConstraint("research_run_id", name="uq_research_outcomes_run"),
        Index("ix_research_outcomes_org_created", "organization_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    item_id: Mapped[str] = mapped_column(String(128), nullable=False)
    research_run_id: Mapped[UUID] = mapped_column(ForeignKey("research_runs.id", ondelete="CASCADE"), nullable=False)

    predicted_price_floor: Mapped[float | None] = mapped_column(Float, nullable=True)
    predicted_price_target: Mapped[float | None] = mapped_column(Float, nullable=True)
    predicted_price_ceiling: Mapped[float | None] = mapped_column(Float, nullable=True)
    predicted_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    identified_brand: Mapped[str | None] = mapped_column(String(255), nullable=True)
    identified_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    research_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    tools_used: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    sold_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    days_to_sell: Mapped[int | None] = mapped_column(Integer, nullable=True)
    marketplace: Mapped[str | None] = mapped_column(String(64), nullable=True)
    was_returned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=sql_text("false"))
    return_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    price_accuracy_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_within_bands: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    identification_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    outcome_quality: Mapped[str | None] = mapped_column(String(16), nullable=True)
    correction_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    corrected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class ToolEffectiveness(Base):
    """Monthly per-tool counters; rolled up into metrics on read."""

    __tablename__ = "tool_effectiveness"
    __table_args__ = (
        UniqueConstraint("organization_id", "tool_type", "period_start", name="uq_tool_effectiveness_period"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tool_type: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    total_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contributed_to_sale: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contributed_to_return: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_price_deviation_sum: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    price_accuracy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_accuracy_sum: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    identification_correct_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    identification_total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence_when_used_sum: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence_when_used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class ResearchAnomaly(Base):
    __tablename__ = "research_anomalies"
    __table_args__ = (Index("ix_research_anomalies_org_resolved", "organization_id", "resolved"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tool_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    anomaly_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    affected_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    pattern: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    suggested_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=sql_text("false"))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class CalibrationResult(Base):
    """Immutable, versioned tool weights for one tool family.

    Only ``is_active`` ever changes after insert, and only when the next
    version of the family is published.
    """

    __tablename__ = "calibration_results"
    __table_args__ = (
        UniqueConstraint("tool_family", "version", name="uq_calibration_family_version"),
        Index("ix_calibration_family_active", "tool_family", "is_active"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tool_family: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sql_text("true"))
    weights: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    details: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    triggered_by: Mapped[str] = mapped_column(String(16), nullable=False)
    triggered_by_user: Mapped[str | None] = mapped_column(String(128), nullable=True)
    period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


@event.listens_for(CalibrationResult, "before_update")
def _reject_calibration_rewrite(mapper, connection, target) -> None:
    changed = {attr.key for attr in inspect(target).attrs if attr.history.has_changes()}
    if changed - {"is_active"}:
        raise ValueError(f"CalibrationResult is immutable; attempted to change {sorted(changed)}")
