"""Outcome, effectiveness, anomaly and calibration routes."""
from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from itemresearch.api.deps import (
    get_anomaly_detector,
    get_calibration_service,
    get_effectiveness_service,
    get_outcome_service,
)
from itemresearch.learning.anomaly import AnomalyDetector
from itemresearch.learning.calibration import TRIGGER_MANUAL, CalibrationService
from itemresearch.learning.effectiveness import EffectivenessService, LearningSummary, ToolEffectivenessMetrics
from itemresearch.learning.outcomes import OutcomeService

router = APIRouter(prefix="/learning", tags=["learning"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SaleBody(BaseModel):
    sold_price: float = Field(gt=0)
    sold_at: datetime | None = None
    marketplace: str | None = None
    listed_at: datetime | None = None


class ReturnBody(BaseModel):
    reason: str | None = None


class CorrectionBody(BaseModel):
    corrected_by: str = Field(min_length=1)
    quality: str | None = None
    identification_correct: bool | None = None
    notes: str | None = None


class SweepBody(BaseModel):
    organization_id: str | None = None


class ResolveBody(BaseModel):
    resolved_by: str = Field(min_length=1)
    notes: str = Field(min_length=1)


class CalibrateBody(BaseModel):
    period_days: int | None = Field(default=None, ge=1)
    triggered_by: str = TRIGGER_MANUAL
    triggered_by_user: str | None = None
    tool_family: str | None = None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_outcome(outcome) -> dict:
    return {
        "id": str(outcome.id),
        "organization_id": outcome.organization_id,
        "item_id": outcome.item_id,
        "research_run_id": str(outcome.research_run_id),
        "predicted_price_floor": outcome.predicted_price_floor,
        "predicted_price_target": outcome.predicted_price_target,
        "predicted_price_ceiling": outcome.predicted_price_ceiling,
        "predicted_category": outcome.predicted_category,
        "identified_brand": outcome.identified_brand,
        "identified_model": outcome.identified_model,
        "research_confidence": outcome.research_confidence,
        "tools_used": outcome.tools_used or [],
        "sold_price": outcome.sold_price,
        "sold_at": _iso(outcome.sold_at),
        "days_to_sell": outcome.days_to_sell,
        "marketplace": outcome.marketplace,
        "was_returned": outcome.was_returned,
        "return_reason": outcome.return_reason,
        "price_accuracy_ratio": outcome.price_accuracy_ratio,
        "price_within_bands": outcome.price_within_bands,
        "identification_correct": outcome.identification_correct,
        "outcome_quality": outcome.outcome_quality,
        "correction_notes": outcome.correction_notes,
        "corrected_by": outcome.corrected_by,
        "corrected_at": _iso(outcome.corrected_at),
        "created_at": _iso(outcome.created_at),
    }


def _serialize_anomaly(anomaly) -> dict:
    return {
        "id": str(anomaly.id),
        "organization_id": anomaly.organization_id,
        "tool_type": anomaly.tool_type,
        "anomaly_type": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "description": anomaly.description,
        "affected_items": anomaly.affected_items or [],
        "pattern": anomaly.pattern,
        "suggested_action": anomaly.suggested_action,
        "detected_at": _iso(anomaly.detected_at),
        "resolved": anomaly.resolved,
        "resolved_at": _iso(anomaly.resolved_at),
        "resolved_by": anomaly.resolved_by,
        "resolution_notes": anomaly.resolution_notes,
    }


def _serialize_calibration(result) -> dict:
    return {
        "id": str(result.id),
        "tool_family": result.tool_family,
        "version": result.version,
        "is_active": result.is_active,
        "weights": result.weights,
        "details": result.details,
        "triggered_by": result.triggered_by,
        "triggered_by_user": result.triggered_by_user,
        "period_days": result.period_days,
        "created_at": _iso(result.created_at),
    }


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@router.post("/outcomes/runs/{run_id}", status_code=201, summary="Snapshot a successful run's predictions")
def ingest_outcome(run_id: UUID, service: OutcomeService = Depends(get_outcome_service)):
    return _serialize_outcome(service.ingest_completed_run(run_id))


@router.get("/outcomes/{outcome_id}", summary="Get an outcome")
def get_outcome(outcome_id: UUID, service: OutcomeService = Depends(get_outcome_service)):
    return _serialize_outcome(service.get(outcome_id))


@router.post("/outcomes/{outcome_id}/sale", summary="Record a sale")
def record_sale(outcome_id: UUID, body: SaleBody, service: OutcomeService = Depends(get_outcome_service)):
    outcome = service.record_sale(
        outcome_id,
        body.sold_price,
        sold_at=body.sold_at,
        marketplace=body.marketplace,
        listed_at=body.listed_at,
    )
    return _serialize_outcome(outcome)


@router.post("/outcomes/{outcome_id}/return", summary="Record a return")
def record_return(outcome_id: UUID, body: ReturnBody, service: OutcomeService = Depends(get_outcome_service)):
    return _serialize_outcome(service.record_return(outcome_id, reason=body.reason))


@router.post("/outcomes/{outcome_id}/correction", summary="Apply a human correction")
def correct_outcome(
    outcome_id: UUID,
    body: CorrectionBody,
    service: OutcomeService = Depends(get_outcome_service),
):
    outcome = service.correct_outcome(
        outcome_id,
        body.corrected_by,
        quality=body.quality,
        identification_correct=body.identification_correct,
        notes=body.notes,
    )
    return _serialize_outcome(outcome)


# ---------------------------------------------------------------------------
# Effectiveness
# ---------------------------------------------------------------------------

@router.get("/tools", summary="Tool effectiveness over a rolling window", response_model=list[ToolEffectivenessMetrics])
def tool_metrics(
    organization_id: str | None = None,
    period_days: int = Query(default=30, ge=1, le=365),
    tool_type: str | None = None,
    service: EffectivenessService = Depends(get_effectiveness_service),
):
    return service.metrics(organization_id, period_days, tool_type=tool_type)


@router.get("/summary", summary="Learning summary", response_model=LearningSummary)
def learning_summary(
    organization_id: str | None = None,
    period_days: int = Query(default=30, ge=1, le=365),
    service: EffectivenessService = Depends(get_effectiveness_service),
):
    return service.summary(organization_id, period_days)


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------

@router.get("/anomalies", summary="List anomalies, most severe first")
def list_anomalies(
    organization_id: str | None = None,
    resolved: bool | None = None,
    severity: str | None = None,
    detector: AnomalyDetector = Depends(get_anomaly_detector),
):
    return [_serialize_anomaly(a) for a in detector.list_anomalies(organization_id, resolved, severity)]


@router.post("/anomalies/sweep", summary="Run the pattern checks now")
def sweep_anomalies(body: SweepBody, detector: AnomalyDetector = Depends(get_anomaly_detector)):
    return [_serialize_anomaly(a) for a in detector.run_sweep(body.organization_id)]


@router.post("/anomalies/{anomaly_id}/resolve", summary="Resolve an anomaly")
def resolve_anomaly(
    anomaly_id: UUID,
    body: ResolveBody,
    detector: AnomalyDetector = Depends(get_anomaly_detector),
):
    return _serialize_anomaly(detector.resolve(anomaly_id, body.resolved_by, body.notes))


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

@router.post("/calibrations", status_code=201, summary="Recalibrate tool weights")
def recalibrate(body: CalibrateBody, service: CalibrationService = Depends(get_calibration_service)):
    published = service.recalibrate(
        period_days=body.period_days,
        triggered_by=body.triggered_by,
        triggered_by_user=body.triggered_by_user,
        tool_family=body.tool_family,
    )
    return [_serialize_calibration(r) for r in published]


@router.get("/calibrations/active", summary="Active calibration version per tool family")
def active_calibrations(service: CalibrationService = Depends(get_calibration_service)):
    return service.active_versions()


@router.get("/calibrations/{tool_family}", summary="Calibration history for a tool family")
def calibration_history(tool_family: str, service: CalibrationService = Depends(get_calibration_service)):
    return [_serialize_calibration(r) for r in service.history(tool_family)]
