"""Versioned tool-weight calibration.

A recalibration reads tool effectiveness across all organizations, derives a
new weight for every tool with enough data, and publishes one immutable
``CalibrationResult`` per affected tool family.  Publishing deactivates the
family's previous version in the same flush, so each family has exactly one
active version at every commit.

Runs pin the active version ids at start (``active_versions()``) and the
executor resolves the pinned weights (``weights_for()``) so a calibration
published mid-run never changes that run's confidence scaling.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from itemresearch.core.errors import NotFound, ValidationError
from itemresearch.core.settings import Settings, get_settings
from itemresearch.db.models import CalibrationResult
from itemresearch.db.repositories import CalibrationResultRepository
from itemresearch.db.session import session_scope
from itemresearch.learning.effectiveness import EffectivenessService, ToolEffectivenessMetrics

logger = logging.getLogger(__name__)

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"
VALID_TRIGGERS: frozenset[str] = frozenset({TRIGGER_SCHEDULED, TRIGGER_MANUAL})

DEFAULT_WEIGHT = 1.0
MIN_WEIGHT = 0.1
MAX_WEIGHT = 2.0


def adjust_weight(current: float, calibration_score: float) -> tuple[float, str]:
    """Return the new weight for a tool and a one-line reason."""
    if calibration_score < 0.7:
        factor, reason = 0.85, "Significantly overconfident, reducing weight"
    elif calibration_score > 1.3:
        factor, reason = 1.1, "Significantly underconfident, increasing weight"
    elif 0.9 <= calibration_score <= 1.1:
        factor, reason = 1.0, "Well calibrated, no change"
    elif calibration_score < 0.9:
        factor, reason = 0.95, "Slightly overconfident, minor reduction"
    else:
        factor, reason = 1.05, "Slightly underconfident, minor increase"
    new = max(MIN_WEIGHT, min(MAX_WEIGHT, current * factor))
    return round(new, 6), reason


class CalibrationService:
    """Flushes but does not commit; the caller controls the transaction."""

    def __init__(self, db_session: Session, settings: Settings | None = None) -> None:
        self.db = db_session
        self.settings = settings or get_settings()
        self.repo = CalibrationResultRepository(db_session)

    def recalibrate(
        self,
        period_days: int | None = None,
        triggered_by: str = TRIGGER_MANUAL,
        triggered_by_user: str | None = None,
        tool_family: str | None = None,
    ) -> list[CalibrationResult]:
        if triggered_by not in VALID_TRIGGERS:
            raise ValidationError(f"Invalid trigger {triggered_by!r}; must be one of {sorted(VALID_TRIGGERS)}")
        period_days = period_days or self.settings.calibration_period_days
        if period_days <= 0:
            raise ValidationError("period_days must be positive")

        metrics = EffectivenessService(self.db).metrics(period_days=period_days, all_organizations=True)
        by_family: dict[str, list[ToolEffectivenessMetrics]] = defaultdict(list)
        for metric in metrics:
            if tool_family is None or metric.tool_family == tool_family:
                by_family[metric.tool_family].append(metric)

        published = []
        for family in sorted(by_family):
            result = self._calibrate_family(family, by_family[family], period_days, triggered_by, triggered_by_user)
            if result is not None:
                published.append(result)
        logger.info(
            "Calibration (%s) over %d day(s): %d family version(s) published",
            triggered_by, period_days, len(published),
        )
        return published

    def _calibrate_family(
        self,
        family: str,
        metrics: list[ToolEffectivenessMetrics],
        period_days: int,
        triggered_by: str,
        triggered_by_user: str | None,
    ) -> CalibrationResult | None:
        active = self.repo.get_active(family)
        previous = dict(active.weights) if active is not None else {}
        weights = dict(previous)
        details = []

        for metric in metrics:
            if metric.data_points < self.settings.calibration_min_data_points or metric.calibration_score is None:
                logger.debug(
                    "Skipping %s: %d data point(s), need %d",
                    metric.tool_type, metric.data_points, self.settings.calibration_min_data_points,
                )
                continue
            current = float(previous.get(metric.tool_type, DEFAULT_WEIGHT))
            new, reason = adjust_weight(current, metric.calibration_score)
            weights[metric.tool_type] = new
            details.append({
                "tool_type": metric.tool_type,
                "previous_weight": current,
                "new_weight": new,
                "calibration_score": metric.calibration_score,
                "data_points": metric.data_points,
                "reasoning": reason,
            })

        if not details:
            return None

        latest = self.db.execute(
            select(func.max(CalibrationResult.version)).where(CalibrationResult.tool_family == family)
        ).scalar()
        if active is not None:
            active.is_active = False
        result = CalibrationResult(
            tool_family=family,
            version=(latest or 0) + 1,
            is_active=True,
            weights=weights,
            details=details,
            triggered_by=triggered_by,
            triggered_by_user=triggered_by_user,
            period_days=period_days,
        )
        self.db.add(result)
        self.db.flush()
        logger.info("Published calibration %s v%d (%d tool(s) adjusted)", family, result.version, len(details))
        return result

    def active_versions(self) -> dict[str, str]:
        """Map each tool family to the id of its active calibration."""
        return {result.tool_family: str(result.id) for result in self.repo.list_active()}

    def weights_for(self, pins: dict[str, str]) -> dict[str, float]:
        """Resolve pinned calibration ids to a flat tool -> weight map."""
        weights: dict[str, float] = {}
        for family, version_id in sorted(pins.items()):
            try:
                result = self.repo.get(UUID(version_id))
            except ValueError:
                result = None
            if result is None or result.tool_family != family:
                logger.warning("Pinned calibration %s for family %s not found; using default weights", version_id, family)
                continue
            weights.update({tool: float(w) for tool, w in result.weights.items()})
        return weights

    def history(self, tool_family: str) -> list[CalibrationResult]:
        results = self.repo.history(tool_family)
        if not results:
            raise NotFound(f"No calibrations for tool family {tool_family!r}")
        return results


def pinned_weights_loader(
    session_factory: sessionmaker,
    settings: Settings | None = None,
) -> Callable[[dict[str, str]], dict[str, float]]:
    """Build the executor's weights loader on top of a session factory."""

    def load(pins: dict[str, str]) -> dict[str, float]:
        with session_scope(session_factory) as db:
            return CalibrationService(db, settings).weights_for(pins)

    return load


def active_pins(db: Session) -> dict[str, str]:
    return CalibrationService(db).active_versions()
