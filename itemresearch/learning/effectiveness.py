"""Tool effectiveness counters and rolling-window metrics.

Counters live in one ``ToolEffectiveness`` row per organization, tool and
calendar month.  Metrics are computed on read over the rows overlapping the
requested window.  Actual accuracy of a priced outcome is
``max(0, 1 - price_accuracy_ratio)``.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from itemresearch.core.clock import utcnow
from itemresearch.core.constants import OUTCOME_QUALITIES, tool_family
from itemresearch.db.models import ResearchOutcome, ToolEffectiveness

logger = logging.getLogger(__name__)


class ToolEffectivenessMetrics(BaseModel):
    tool_type: str
    tool_family: str
    total_uses: int
    sale_count: int
    return_count: int
    data_points: int
    accuracy: float | None
    avg_price_deviation: float | None
    avg_confidence: float | None
    calibration_score: float | None
    identification_accuracy: float | None
    sale_contribution_rate: float
    return_rate: float


class LearningSummary(BaseModel):
    period_start: datetime
    period_end: datetime
    total_outcomes: int
    average_price_accuracy: float | None
    identification_accuracy: float | None
    outcomes_by_quality: dict[str, int]
    tools: list[ToolEffectivenessMetrics]


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Return [start, end) of the calendar month containing *moment* (UTC)."""
    moment = moment.astimezone(timezone.utc) if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def actual_accuracy(price_accuracy_ratio: float) -> float:
    return max(0.0, 1.0 - price_accuracy_ratio)


def tools_in(outcome: ResearchOutcome) -> dict[str, float | None]:
    """Map each tool the outcome's run used to its mean reported confidence."""
    grouped: dict[str, list[float]] = defaultdict(list)
    seen: set[str] = set()
    for record in outcome.tools_used or []:
        tool = record.get("tool_type")
        if not tool:
            continue
        seen.add(tool)
        if record.get("confidence") is not None:
            grouped[tool].append(float(record["confidence"]))
    return {
        tool: (sum(grouped[tool]) / len(grouped[tool]) if grouped[tool] else None)
        for tool in sorted(seen)
    }


class EffectivenessService:
    """Flushes but does not commit; the caller controls the transaction."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    # ------------------------------------------------------------------
    # Counter updates
    # ------------------------------------------------------------------

    def _period_row(self, organization_id: str | None, tool_type: str, moment: datetime | None = None) -> ToolEffectiveness:
        start, end = month_bounds(moment or utcnow())
        stmt = select(ToolEffectiveness).where(
            ToolEffectiveness.organization_id == organization_id,
            ToolEffectiveness.tool_type == tool_type,
            ToolEffectiveness.period_start == start,
        )
        row = self.db.execute(stmt).scalars().first()
        if row is None:
            row = ToolEffectiveness(
                organization_id=organization_id,
                tool_type=tool_type,
                period_start=start,
                period_end=end,
                total_uses=0,
                contributed_to_sale=0,
                contributed_to_return=0,
                total_price_deviation_sum=0.0,
                price_accuracy_count=0,
                actual_accuracy_sum=0.0,
                identification_correct_count=0,
                identification_total_count=0,
                confidence_when_used_sum=0.0,
                confidence_when_used_count=0,
            )
            self.db.add(row)
            self.db.flush()
        return row

    def record_usage(self, outcome: ResearchOutcome) -> None:
        for tool, confidence in tools_in(outcome).items():
            row = self._period_row(outcome.organization_id, tool)
            row.total_uses += 1
            if confidence is not None:
                row.confidence_when_used_sum += confidence
                row.confidence_when_used_count += 1
        self.db.flush()

    def record_sale(self, outcome: ResearchOutcome) -> None:
        for tool in tools_in(outcome):
            row = self._period_row(outcome.organization_id, tool)
            row.contributed_to_sale += 1
            if outcome.price_accuracy_ratio is not None:
                row.total_price_deviation_sum += outcome.price_accuracy_ratio
                row.actual_accuracy_sum += actual_accuracy(outcome.price_accuracy_ratio)
                row.price_accuracy_count += 1
        self.db.flush()

    def record_return(self, outcome: ResearchOutcome) -> None:
        for tool in tools_in(outcome):
            self._period_row(outcome.organization_id, tool).contributed_to_return += 1
        self.db.flush()

    def record_identification(self, outcome: ResearchOutcome, correct: bool) -> None:
        for tool in tools_in(outcome):
            if tool_family(tool) != "identification":
                continue
            row = self._period_row(outcome.organization_id, tool)
            row.identification_total_count += 1
            if correct:
                row.identification_correct_count += 1
        self.db.flush()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def metrics(
        self,
        organization_id: str | None = None,
        period_days: int = 30,
        tool_type: str | None = None,
        now: datetime | None = None,
        all_organizations: bool = False,
    ) -> list[ToolEffectivenessMetrics]:
        """Aggregate counters for every tool over the last *period_days*."""
        if period_days <= 0:
            raise ValueError("period_days must be positive")
        since = (now or utcnow()) - timedelta(days=period_days)
        stmt = select(ToolEffectiveness).where(ToolEffectiveness.period_end > since)
        if not all_organizations:
            stmt = stmt.where(ToolEffectiveness.organization_id == organization_id)
        if tool_type is not None:
            stmt = stmt.where(ToolEffectiveness.tool_type == tool_type)

        totals: dict[str, dict[str, Any]] = defaultdict(lambda: defaultdict(float))
        for row in self.db.execute(stmt).scalars():
            acc = totals[row.tool_type]
            acc["total_uses"] += row.total_uses
            acc["sales"] += row.contributed_to_sale
            acc["returns"] += row.contributed_to_return
            acc["deviation_sum"] += row.total_price_deviation_sum
            acc["accuracy_sum"] += row.actual_accuracy_sum
            acc["accuracy_count"] += row.price_accuracy_count
            acc["id_correct"] += row.identification_correct_count
            acc["id_total"] += row.identification_total_count
            acc["confidence_sum"] += row.confidence_when_used_sum
            acc["confidence_count"] += row.confidence_when_used_count

        return [self._to_metrics(tool, acc) for tool, acc in sorted(totals.items())]

    @staticmethod
    def _to_metrics(tool: str, acc: dict[str, Any]) -> ToolEffectivenessMetrics:
        data_points = int(acc["accuracy_count"])
        accuracy = acc["accuracy_sum"] / data_points if data_points else None
        avg_confidence = acc["confidence_sum"] / acc["confidence_count"] if acc["confidence_count"] else None
        calibration = None
        if accuracy is not None and avg_confidence:
            calibration = accuracy / avg_confidence
        uses = int(acc["total_uses"])
        sales = int(acc["sales"])
        returns = int(acc["returns"])
        return ToolEffectivenessMetrics(
            tool_type=tool,
            tool_family=tool_family(tool),
            total_uses=uses,
            sale_count=sales,
            return_count=returns,
            data_points=data_points,
            accuracy=accuracy,
            avg_price_deviation=acc["deviation_sum"] / data_points if data_points else None,
            avg_confidence=avg_confidence,
            calibration_score=calibration,
            identification_accuracy=acc["id_correct"] / acc["id_total"] if acc["id_total"] else None,
            sale_contribution_rate=sales / uses if uses else 0.0,
            return_rate=returns / sales if sales else 0.0,
        )

    def summary(self, organization_id: str | None, period_days: int = 30, now: datetime | None = None) -> LearningSummary:
        end = now or utcnow()
        start = end - timedelta(days=period_days)
        stmt = select(ResearchOutcome).where(
            ResearchOutcome.organization_id == organization_id,
            ResearchOutcome.created_at >= start,
        )
        outcomes = list(self.db.execute(stmt).scalars())
        ratios = [o.price_accuracy_ratio for o in outcomes if o.price_accuracy_ratio is not None]
        judged = [o.identification_correct for o in outcomes if o.identification_correct is not None]
        by_quality = {quality: 0 for quality in sorted(OUTCOME_QUALITIES)}
        for outcome in outcomes:
            if outcome.outcome_quality in by_quality:
                by_quality[outcome.outcome_quality] += 1
        return LearningSummary(
            period_start=start,
            period_end=end,
            total_outcomes=len(outcomes),
            average_price_accuracy=sum(ratios) / len(ratios) if ratios else None,
            identification_accuracy=sum(1 for j in judged if j) / len(judged) if judged else None,
            outcomes_by_quality=by_quality,
            tools=self.metrics(organization_id, period_days, now=end),
        )
