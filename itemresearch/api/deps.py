"""FastAPI dependency injection: the process runtime, sessions and services."""
from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from itemresearch.activity.broadcaster import ActivityBroadcaster
from itemresearch.core.settings import get_settings
from itemresearch.db.session import get_session_factory
from itemresearch.learning.anomaly import AnomalyDetector
from itemresearch.learning.calibration import CalibrationService
from itemresearch.learning.effectiveness import EffectivenessService
from itemresearch.learning.outcomes import OutcomeService
from itemresearch.runs.controller import RunController
from itemresearch.runs.runtime import ResearchRuntime, build_runtime

_runtime: ResearchRuntime | None = None


def get_runtime() -> ResearchRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(get_session_factory(), get_settings())
    return _runtime


def set_runtime(runtime: ResearchRuntime | None) -> None:
    """Install (or clear) the process runtime."""
    global _runtime
    _runtime = runtime


def get_db(runtime: ResearchRuntime = Depends(get_runtime)) -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = runtime.session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_controller(runtime: ResearchRuntime = Depends(get_runtime)) -> RunController:
    return runtime.controller


def get_broadcaster(runtime: ResearchRuntime = Depends(get_runtime)) -> ActivityBroadcaster:
    return runtime.broadcaster


def get_anomaly_detector(
    db: Session = Depends(get_db),
    runtime: ResearchRuntime = Depends(get_runtime),
) -> AnomalyDetector:
    return AnomalyDetector(db, runtime.settings)


def get_outcome_service(
    db: Session = Depends(get_db),
    detector: AnomalyDetector = Depends(get_anomaly_detector),
) -> OutcomeService:
    """Return an OutcomeService that runs anomaly checks on every sale."""
    return OutcomeService(db, detector)


def get_effectiveness_service(db: Session = Depends(get_db)) -> EffectivenessService:
    return EffectivenessService(db)


def get_calibration_service(
    db: Session = Depends(get_db),
    runtime: ResearchRuntime = Depends(get_runtime),
) -> CalibrationService:
    return CalibrationService(db, runtime.settings)
