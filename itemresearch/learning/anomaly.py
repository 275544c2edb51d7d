"""Anomaly detection over research outcomes.

Two kinds of checks:

- ``check_outcome()`` runs when a sale is recorded.  For each tool the
  outcome's run used, the outcome's actual accuracy is compared with that
  tool's accuracy distribution over the lookback window; ``|z| >= threshold``
  flags an ``outcome_outlier``.
- ``run_sweep()`` looks for organization-wide patterns: average price
  deviation, slow sales, return rate, per-tool confidence miscalibration and
  tool failure spikes.

A detector never opens a second unresolved anomaly of the same type for the
same organization and tool; it refreshes the existing one instead.
"""
from __future__ import annotations

import logging
import statistics
from collections import Counter
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from itemresearch.activity.events import EVENT_COMPLETED, EVENT_FAILED, TYPE_TOOL_CALL
from itemresearch.core.clock import utcnow
from itemresearch.core.constants import (
    ANOMALY_CATEGORY_MISIDENTIFICATION,
    ANOMALY_CONFIDENCE_MISCALIBRATION,
    ANOMALY_OUTCOME_OUTLIER,
    ANOMALY_PRICE_DEVIATION,
    ANOMALY_SLOW_SALES,
    ANOMALY_TOOL_FAILURE_SPIKE,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_RANK,
    SEVERITY_WARNING,
)
from itemresearch.core.errors import InvalidState, NotFound, ValidationError
from itemresearch.core.settings import Settings, get_settings
from itemresearch.db.models import ActivityLogEntry, ResearchAnomaly, ResearchOutcome
from itemresearch.db.repositories import ResearchAnomalyRepository, ResearchOutcomeRepository
from itemresearch.learning.effectiveness import EffectivenessService, actual_accuracy, tools_in

logger = logging.getLogger(__name__)

THRESHOLDS: dict[str, float] = {
    "price_deviation": 0.15,
    "price_deviation_warning": 0.25,
    "price_deviation_min_items": 10,
    "slow_sales_days": 30,
    "slow_sales_warning_days": 45,
    "slow_sales_min_items": 5,
    "return_rate": 0.15,
    "return_rate_critical": 0.25,
    "return_rate_min_samples": 10,
    "calibration_deviation": 0.25,
    "calibration_min_items": 15,
    "tool_failure_rate": 0.20,
    "tool_failure_critical_rate": 0.40,
    "tool_failure_min_calls": 20,
}


def severity_for_z(z: float, threshold: float) -> str:
    magnitude = abs(z)
    if magnitude >= 2 * threshold:
        return SEVERITY_CRITICAL
    if magnitude >= 1.5 * threshold:
        return SEVERITY_WARNING
    return SEVERITY_INFO


class AnomalyDetector:
    """Flushes but does not commit; the caller controls the transaction."""

    def __init__(self, db_session: Session, settings: Settings | None = None) -> None:
        self.db = db_session
        self.settings = settings or get_settings()
        self.repo = ResearchAnomalyRepository(db_session)
        self.outcomes = ResearchOutcomeRepository(db_session)

    def _since(self, now: datetime | None = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.settings.anomaly_lookback_days)

    # ------------------------------------------------------------------
    # Per-outcome check
    # ------------------------------------------------------------------

    def check_outcome(self, outcome: ResearchOutcome, now: datetime | None = None) -> list[ResearchAnomaly]:
        if outcome.price_accuracy_ratio is None:
            return []
        observed = actual_accuracy(outcome.price_accuracy_ratio)
        history = [
            o for o in self.outcomes.list_recent(outcome.organization_id, self._since(now), exclude_id=outcome.id)
            if o.price_accuracy_ratio is not None
        ]

        flagged = []
        threshold = self.settings.anomaly_z_threshold
        for tool in tools_in(outcome):
            samples = [actual_accuracy(o.price_accuracy_ratio) for o in history if tool in tools_in(o)]
            if len(samples) < self.settings.anomaly_min_samples:
                continue
            mean = statistics.fmean(samples)
            spread = statistics.stdev(samples)
            if spread == 0:
                if observed == mean:
                    continue
                z = float("inf") if observed > mean else float("-inf")
            else:
                z = (observed - mean) / spread
            if abs(z) < threshold:
                continue

            anomaly = self._upsert(
                outcome.organization_id,
                ANOMALY_OUTCOME_OUTLIER,
                tool_type=tool,
                severity=severity_for_z(z, threshold),
                description=(
                    f"Outcome for item {outcome.item_id} deviates from {tool}'s recent accuracy: "
                    f"{observed:.2f} vs mean {mean:.2f} (z={z:.1f})"
                ),
                affected_items=[outcome.item_id],
                pattern={
                    "z_score": z if spread else None,
                    "observed_accuracy": observed,
                    "mean_accuracy": mean,
                    "stdev": spread,
                    "samples": len(samples),
                    "outcome_id": str(outcome.id),
                },
                suggested_action=f"Review the {tool} evidence for this item and recent changes to the tool.",
                merge_items=True,
            )
            flagged.append(anomaly)
        return flagged

    # ------------------------------------------------------------------
    # Pattern sweep
    # ------------------------------------------------------------------

    def run_sweep(self, organization_id: str | None, now: datetime | None = None) -> list[ResearchAnomaly]:
        since = self._since(now)
        recent = self.outcomes.list_recent(organization_id, since)
        found: list[ResearchAnomaly | None] = []
        if len(recent) >= self.settings.anomaly_min_samples:
            found.append(self._check_price_deviation(organization_id, recent))
            found.append(self._check_slow_sales(organization_id, recent))
            found.append(self._check_return_rate(organization_id, recent))
            found.extend(self._check_miscalibration(organization_id, now))
        found.extend(self._check_tool_failures(organization_id, since))
        anomalies = [a for a in found if a is not None]
        logger.info("Anomaly sweep for org %s: %d anomaly(ies)", organization_id, len(anomalies))
        return anomalies

    def _check_price_deviation(self, organization_id, outcomes: list[ResearchOutcome]) -> ResearchAnomaly | None:
        ratios = [o.price_accuracy_ratio for o in outcomes if o.price_accuracy_ratio is not None]
        if len(ratios) < THRESHOLDS["price_deviation_min_items"]:
            return None
        average = sum(ratios) / len(ratios)
        if average <= THRESHOLDS["price_deviation"]:
            return None
        return self._upsert(
            organization_id,
            ANOMALY_PRICE_DEVIATION,
            severity=SEVERITY_WARNING if average > THRESHOLDS["price_deviation_warning"] else SEVERITY_INFO,
            description=f"Average price deviation of {average:.1%} across {len(ratios)} sales",
            affected_items=[
                o.item_id for o in outcomes
                if o.price_accuracy_ratio is not None and o.price_accuracy_ratio > THRESHOLDS["price_deviation"]
            ],
            pattern={"average_deviation": average, "sample_size": len(ratios), "threshold": THRESHOLDS["price_deviation"]},
            suggested_action="Review pricing inputs and comparable selection for recent items.",
        )

    def _check_slow_sales(self, organization_id, outcomes: list[ResearchOutcome]) -> ResearchAnomaly | None:
        days = [o.days_to_sell for o in outcomes if o.days_to_sell is not None]
        if len(days) < THRESHOLDS["slow_sales_min_items"]:
            return None
        average = sum(days) / len(days)
        if average <= THRESHOLDS["slow_sales_days"]:
            return None
        return self._upsert(
            organization_id,
            ANOMALY_SLOW_SALES,
            severity=SEVERITY_WARNING if average > THRESHOLDS["slow_sales_warning_days"] else SEVERITY_INFO,
            description=f"Items take {average:.0f} days to sell on average ({len(days)} sales)",
            affected_items=[
                o.item_id for o in outcomes
                if o.days_to_sell is not None and o.days_to_sell > THRESHOLDS["slow_sales_days"]
            ],
            pattern={"average_days": average, "sample_size": len(days), "threshold": THRESHOLDS["slow_sales_days"]},
            suggested_action="Prices may be set too high; compare targets with recent sold comparables.",
        )

    def _check_return_rate(self, organization_id, outcomes: list[ResearchOutcome]) -> ResearchAnomaly | None:
        sold = [o for o in outcomes if o.sold_price is not None]
        if len(sold) < THRESHOLDS["return_rate_min_samples"]:
            return None
        returned = [o for o in sold if o.was_returned]
        rate = len(returned) / len(sold)
        if rate <= THRESHOLDS["return_rate"]:
            return None
        return self._upsert(
            organization_id,
            ANOMALY_CATEGORY_MISIDENTIFICATION,
            severity=SEVERITY_CRITICAL if rate > THRESHOLDS["return_rate_critical"] else SEVERITY_WARNING,
            description=f"High return rate of {rate:.1%} ({len(returned)} of {len(sold)} items)",
            affected_items=[o.item_id for o in returned],
            pattern={"return_rate": rate, "returns": len(returned), "sales": len(sold)},
            suggested_action="Review return reasons; identification or condition assessment may be off.",
        )

    def _check_miscalibration(self, organization_id, now: datetime | None) -> list[ResearchAnomaly]:
        anomalies = []
        metrics = EffectivenessService(self.db).metrics(
            organization_id, self.settings.anomaly_lookback_days, now=now
        )
        for metric in metrics:
            if metric.data_points < THRESHOLDS["calibration_min_items"]:
                continue
            if metric.accuracy is None or metric.avg_confidence is None:
                continue
            gap = metric.avg_confidence - metric.accuracy
            if abs(gap) <= THRESHOLDS["calibration_deviation"]:
                continue
            direction = "overconfident" if gap > 0 else "underconfident"
            anomalies.append(
                self._upsert(
                    organization_id,
                    ANOMALY_CONFIDENCE_MISCALIBRATION,
                    tool_type=metric.tool_type,
                    severity=SEVERITY_WARNING,
                    description=(
                        f"{metric.tool_type} is {direction}: reports {metric.avg_confidence:.0%} "
                        f"confidence, achieves {metric.accuracy:.0%} accuracy"
                    ),
                    affected_items=[],
                    pattern={
                        "avg_confidence": metric.avg_confidence,
                        "accuracy": metric.accuracy,
                        "data_points": metric.data_points,
                    },
                    suggested_action="Run a calibration to adjust this tool's weight.",
                )
            )
        return anomalies

    def _check_tool_failures(self, organization_id, since: datetime) -> list[ResearchAnomaly]:
        stmt = select(ActivityLogEntry.title, ActivityLogEntry.event_type).where(
            ActivityLogEntry.organization_id == organization_id,
            ActivityLogEntry.type == TYPE_TOOL_CALL,
            ActivityLogEntry.timestamp >= since,
        )
        calls: Counter[str] = Counter()
        failures: Counter[str] = Counter()
        for tool, event_type in self.db.execute(stmt):
            if event_type not in (EVENT_COMPLETED, EVENT_FAILED):
                continue
            calls[tool] += 1
            if event_type == EVENT_FAILED:
                failures[tool] += 1

        anomalies = []
        for tool, total in sorted(calls.items()):
            if total < THRESHOLDS["tool_failure_min_calls"]:
                continue
            rate = failures[tool] / total
            if rate <= THRESHOLDS["tool_failure_rate"]:
                continue
            anomalies.append(
                self._upsert(
                    organization_id,
                    ANOMALY_TOOL_FAILURE_SPIKE,
                    tool_type=tool,
                    severity=SEVERITY_CRITICAL if rate > THRESHOLDS["tool_failure_critical_rate"] else SEVERITY_WARNING,
                    description=f"{tool} failed {failures[tool]} of {total} calls ({rate:.0%})",
                    affected_items=[],
                    pattern={"failure_rate": rate, "failures": failures[tool], "calls": total},
                    suggested_action=f"Check the health of {tool} and its upstream provider.",
                )
            )
        return anomalies

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _upsert(
        self,
        organization_id: str | None,
        anomaly_type: str,
        severity: str,
        description: str,
        affected_items: list[str],
        pattern: dict[str, Any],
        suggested_action: str,
        tool_type: str | None = None,
        merge_items: bool = False,
    ) -> ResearchAnomaly:
        existing = self.repo.find_unresolved(organization_id, anomaly_type, tool_type)
        if existing is not None:
            if merge_items:
                items = list(existing.affected_items or [])
                items.extend(i for i in affected_items if i not in items)
                affected_items = items
                if SEVERITY_RANK[existing.severity] > SEVERITY_RANK[severity]:
                    severity = existing.severity
            existing.description = description
            existing.affected_items = affected_items
            existing.pattern = pattern
            existing.severity = severity
            existing.detected_at = utcnow()
            self.db.flush()
            return existing

        anomaly = self.repo.create(
            organization_id=organization_id,
            tool_type=tool_type,
            anomaly_type=anomaly_type,
            severity=severity,
            description=description,
            affected_items=affected_items,
            pattern=pattern,
            suggested_action=suggested_action,
            detected_at=utcnow(),
            resolved=False,
        )
        logger.info("Created %s anomaly for org %s: %s", severity, organization_id, anomaly_type)
        return anomaly

    def resolve(self, anomaly_id: UUID, resolved_by: str, notes: str) -> ResearchAnomaly:
        if not resolved_by or not resolved_by.strip():
            raise ValidationError("resolved_by must be a non-empty string")
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required")
        anomaly = self.repo.get(anomaly_id)
        if anomaly is None:
            raise NotFound(f"ResearchAnomaly {anomaly_id} not found")
        if anomaly.resolved:
            raise InvalidState(f"Anomaly {anomaly_id} is already resolved")
        anomaly.resolved = True
        anomaly.resolved_at = utcnow()
        anomaly.resolved_by = resolved_by
        anomaly.resolution_notes = notes
        self.db.flush()
        return anomaly

    def list_anomalies(
        self,
        organization_id: str | None,
        resolved: bool | None = None,
        severity: str | None = None,
        limit: int = 100,
    ) -> list[ResearchAnomaly]:
        stmt = select(ResearchAnomaly).where(ResearchAnomaly.organization_id == organization_id)
        if resolved is not None:
            stmt = stmt.where(ResearchAnomaly.resolved.is_(resolved))
        if severity is not None:
            stmt = stmt.where(ResearchAnomaly.severity == severity)
        rows = list(self.db.execute(stmt.order_by(ResearchAnomaly.detected_at.desc()).limit(limit)).scalars())
        rows.sort(key=lambda a: -SEVERITY_RANK.get(a.severity, 0))
        return rows
