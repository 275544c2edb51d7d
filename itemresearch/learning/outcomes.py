"""Research outcomes: what a run predicted versus what actually happened.

``ingest_completed_run()`` snapshots a successful run's predictions; sale,
return and correction events are recorded against that snapshot later and
feed the tool effectiveness counters and anomaly checks.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy.orm import Session

from itemresearch.core.clock import ensure_utc, utcnow
from itemresearch.core.constants import (
    OUTCOME_QUALITIES,
    QUALITY_EXCELLENT,
    QUALITY_FAIR,
    QUALITY_GOOD,
    QUALITY_POOR,
    RUN_SUCCESS,
)
from itemresearch.core.errors import InvalidState, NotFound, RunNotFound, ValidationError
from itemresearch.db.models import ResearchOutcome, ResearchRun
from itemresearch.db.repositories import ResearchOutcomeRepository
from itemresearch.learning.effectiveness import EffectivenessService

if TYPE_CHECKING:
    from itemresearch.learning.anomaly import AnomalyDetector

logger = logging.getLogger(__name__)


def outcome_quality(price_accuracy_ratio: float | None, price_within_bands: bool | None) -> str:
    """Label a sale by how far it landed from the predicted target."""
    if price_accuracy_ratio is None:
        return QUALITY_FAIR
    if price_accuracy_ratio <= 0.05:
        return QUALITY_EXCELLENT
    if price_accuracy_ratio <= 0.15:
        return QUALITY_GOOD
    if price_accuracy_ratio <= 0.30 or price_within_bands:
        return QUALITY_FAIR
    return QUALITY_POOR


def _as_float(value) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class OutcomeService:
    """Flushes but does not commit; the caller controls the transaction."""

    def __init__(self, db_session: Session, anomaly_detector: AnomalyDetector | None = None) -> None:
        self.db = db_session
        self.repo = ResearchOutcomeRepository(db_session)
        self.effectiveness = EffectivenessService(db_session)
        self.anomaly_detector = anomaly_detector

    def get(self, outcome_id: UUID) -> ResearchOutcome:
        outcome = self.repo.get(outcome_id)
        if outcome is None:
            raise NotFound(f"ResearchOutcome {outcome_id} not found")
        return outcome

    def ingest_completed_run(self, run_id: UUID) -> ResearchOutcome:
        """Snapshot a successful run's predictions. Idempotent per run."""
        run = self.db.get(ResearchRun, run_id)
        if run is None:
            raise RunNotFound(run_id)
        if run.status != RUN_SUCCESS:
            raise InvalidState(f"Only successful runs produce outcomes; run is {run.status!r}", run.status)

        existing = self.repo.get_by_run(run_id)
        if existing is not None:
            return existing

        context = run.context_data or {}
        result = context.get("result") or {}
        outcome = self.repo.create(
            organization_id=run.organization_id,
            item_id=run.item_id,
            research_run_id=run.id,
            predicted_price_floor=_as_float(result.get("price_floor")),
            predicted_price_target=_as_float(result.get("price_target")),
            predicted_price_ceiling=_as_float(result.get("price_ceiling")),
            predicted_category=_as_text(result.get("category")),
            identified_brand=_as_text(result.get("brand")),
            identified_model=_as_text(result.get("model")),
            research_confidence=_as_float(result.get("confidence")),
            tools_used=list(context.get("tools_used") or []),
        )
        self.effectiveness.record_usage(outcome)
        logger.info("Outcome %s ingested for run %s", outcome.id, run_id)
        return outcome

    def record_sale(
        self,
        outcome_id: UUID,
        sold_price: float,
        sold_at: datetime | None = None,
        marketplace: str | None = None,
        listed_at: datetime | None = None,
    ) -> ResearchOutcome:
        if sold_price is None or sold_price <= 0:
            raise ValidationError("sold_price must be positive")
        outcome = self.get(outcome_id)
        if outcome.sold_price is not None:
            raise InvalidState(f"Sale already recorded for outcome {outcome_id}")

        sold_at = ensure_utc(sold_at) or utcnow()
        listed = ensure_utc(listed_at) or ensure_utc(outcome.created_at)

        ratio = None
        if outcome.predicted_price_target is not None:
            ratio = abs(outcome.predicted_price_target - sold_price) / sold_price
        within = None
        if outcome.predicted_price_floor is not None and outcome.predicted_price_ceiling is not None:
            within = outcome.predicted_price_floor <= sold_price <= outcome.predicted_price_ceiling

        outcome.sold_price = sold_price
        outcome.sold_at = sold_at
        outcome.marketplace = marketplace
        outcome.days_to_sell = max(0, (sold_at - listed).days) if listed is not None else None
        outcome.price_accuracy_ratio = ratio
        outcome.price_within_bands = within
        outcome.outcome_quality = outcome_quality(ratio, within)
        self.db.flush()

        self.effectiveness.record_sale(outcome)
        if self.anomaly_detector is not None:
            self.anomaly_detector.check_outcome(outcome)

        logger.info("Sale recorded for outcome %s: quality=%s", outcome.id, outcome.outcome_quality)
        return outcome

    def record_return(self, outcome_id: UUID, reason: str | None = None) -> ResearchOutcome:
        outcome = self.get(outcome_id)
        if outcome.sold_price is None:
            raise InvalidState(f"Outcome {outcome_id} has no recorded sale to return")
        if outcome.was_returned:
            raise InvalidState(f"Return already recorded for outcome {outcome_id}")

        outcome.was_returned = True
        outcome.return_reason = reason
        outcome.outcome_quality = QUALITY_POOR
        self.db.flush()

        self.effectiveness.record_return(outcome)
        logger.info("Return recorded for outcome %s", outcome.id)
        return outcome

    def correct_outcome(
        self,
        outcome_id: UUID,
        corrected_by: str,
        quality: str | None = None,
        identification_correct: bool | None = None,
        notes: str | None = None,
    ) -> ResearchOutcome:
        """Apply a human judgement to an outcome."""
        if not corrected_by or not corrected_by.strip():
            raise ValidationError("corrected_by must be a non-empty string")
        if quality is None and identification_correct is None:
            raise ValidationError("Provide quality or identification_correct")
        if quality is not None and quality not in OUTCOME_QUALITIES:
            raise ValidationError(f"Invalid quality {quality!r}; must be one of {sorted(OUTCOME_QUALITIES)}")

        outcome = self.get(outcome_id)
        first_identification_judgement = outcome.identification_correct is None

        if quality is not None:
            outcome.outcome_quality = quality
        if identification_correct is not None:
            outcome.identification_correct = identification_correct
        outcome.correction_notes = notes
        outcome.corrected_by = corrected_by
        outcome.corrected_at = utcnow()
        self.db.flush()

        if identification_correct is not None and first_identification_judgement:
            self.effectiveness.record_identification(outcome, identification_correct)

        logger.info("Outcome %s corrected by %s", outcome.id, corrected_by)
        return outcome
