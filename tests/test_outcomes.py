"""Tests for itemresearch/learning/outcomes.py and effectiveness.py."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from itemresearch.core.errors import InvalidState, NotFound, RunNotFound, ValidationError
from itemresearch.learning.effectiveness import EffectivenessService, month_bounds, tools_in
from itemresearch.learning.outcomes import OutcomeService, outcome_quality
from tests.conftest import create_success_run

SOLD_AT = datetime(2026, 3, 20, tzinfo=timezone.utc)
LISTED_AT = datetime(2026, 3, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def service(db_session):
    return OutcomeService(db_session)


@pytest.fixture()
def outcome(db_session, service):
    run = create_success_run(db_session, "item-1")
    return service.ingest_completed_run(run.id)


def _metric(db_session, tool_type, organization_id="org-1"):
    [metric] = EffectivenessService(db_session).metrics(organization_id, period_days=30, tool_type=tool_type)
    return metric


# ===========================================================================
# Quality labels
# ===========================================================================

class TestOutcomeQuality:
    @pytest.mark.parametrize("ratio,within,expected", [
        (0.0, True, "excellent"),
        (0.05, False, "excellent"),
        (0.10, False, "good"),
        (0.15, None, "good"),
        (0.25, False, "fair"),
        (0.45, True, "fair"),
        (0.45, False, "poor"),
        (None, None, "fair"),
    ])
    def test_thresholds(self, ratio, within, expected):
        assert outcome_quality(ratio, within) == expected


# ===========================================================================
# Ingestion
# ===========================================================================

class TestIngest:
    def test_snapshots_predictions(self, outcome):
        assert outcome.predicted_price_target == 100.0
        assert outcome.predicted_price_floor == 80.0
        assert outcome.predicted_category == "Film Cameras"
        assert outcome.identified_brand == "Canon"
        assert outcome.research_confidence == 0.74
        assert [t["tool_type"] for t in outcome.tools_used] == ["product_identification", "pricing"]

    def test_is_idempotent_per_run(self, db_session, service, outcome):
        again = service.ingest_completed_run(outcome.research_run_id)

        assert again.id == outcome.id
        assert _metric(db_session, "pricing").total_uses == 1

    def test_records_usage_and_confidence(self, db_session, outcome):
        metric = _metric(db_session, "product_identification")

        assert metric.total_uses == 1
        assert metric.avg_confidence == pytest.approx(0.9)
        assert metric.tool_family == "identification"

    def test_rejects_unfinished_run(self, controller, service):
        run = controller.start("item-9")

        with pytest.raises(InvalidState) as exc_info:
            service.ingest_completed_run(run.id)
        assert exc_info.value.current_status == "pending"

    def test_unknown_run(self, service):
        with pytest.raises(RunNotFound):
            service.ingest_completed_run(uuid.uuid4())

    def test_ingests_a_real_run(self, controller, drive, db_session, service):
        run = controller.start("item-1", organization_id="org-1")
        drive(run.id)

        outcome = service.ingest_completed_run(run.id)

        assert outcome.predicted_price_target == 130.0
        assert outcome.predicted_price_ceiling == 150.0
        assert outcome.identified_model == "AE-1"
        assert outcome.organization_id == "org-1"
        assert "pricing" in tools_in(outcome)


# ===========================================================================
# Sale / return / correction
# ===========================================================================

class TestRecordSale:
    def test_computes_accuracy_and_days(self, service, outcome):
        sold = service.record_sale(outcome.id, 110.0, sold_at=SOLD_AT, marketplace="ebay", listed_at=LISTED_AT)

        assert sold.price_accuracy_ratio == pytest.approx(10.0 / 110.0)
        assert sold.price_within_bands is True
        assert sold.days_to_sell == 19
        assert sold.outcome_quality == "good"
        assert sold.marketplace == "ebay"

    def test_out_of_band_sale(self, service, outcome):
        sold = service.record_sale(outcome.id, 50.0, sold_at=SOLD_AT, listed_at=LISTED_AT)

        assert sold.price_accuracy_ratio == pytest.approx(1.0)
        assert sold.price_within_bands is False
        assert sold.outcome_quality == "poor"

    def test_updates_tool_accuracy(self, db_session, service, outcome):
        service.record_sale(outcome.id, 125.0, sold_at=SOLD_AT, listed_at=LISTED_AT)

        metric = _metric(db_session, "pricing")
        assert metric.sale_count == 1
        assert metric.data_points == 1
        assert metric.accuracy == pytest.approx(0.8)
        assert metric.calibration_score == pytest.approx(1.0)

    def test_sale_only_once(self, service, outcome):
        service.record_sale(outcome.id, 100.0)

        with pytest.raises(InvalidState):
            service.record_sale(outcome.id, 90.0)

    @pytest.mark.parametrize("price", [0, -5.0])
    def test_price_must_be_positive(self, service, outcome, price):
        with pytest.raises(ValidationError):
            service.record_sale(outcome.id, price)

    def test_unknown_outcome(self, service):
        with pytest.raises(NotFound):
            service.record_sale(uuid.uuid4(), 100.0)

    def test_runs_anomaly_check(self, db_session, outcome):
        checked = []

        class Detector:
            def check_outcome(self, o):
                checked.append(o.id)

        OutcomeService(db_session, Detector()).record_sale(outcome.id, 100.0)

        assert checked == [outcome.id]


class TestRecordReturn:
    def test_marks_poor_and_counts_return(self, db_session, service, outcome):
        service.record_sale(outcome.id, 100.0)

        returned = service.record_return(outcome.id, reason="not as described")

        assert returned.was_returned is True
        assert returned.outcome_quality == "poor"
        assert _metric(db_session, "pricing").return_rate == 1.0

    def test_requires_a_sale(self, service, outcome):
        with pytest.raises(InvalidState):
            service.record_return(outcome.id)

    def test_only_once(self, service, outcome):
        service.record_sale(outcome.id, 100.0)
        service.record_return(outcome.id)

        with pytest.raises(InvalidState):
            service.record_return(outcome.id)


class TestCorrectOutcome:
    def test_sets_quality_and_audit_fields(self, service, outcome):
        corrected = service.correct_outcome(outcome.id, "reviewer@example.com", quality="excellent", notes="checked")

        assert corrected.outcome_quality == "excellent"
        assert corrected.corrected_by == "reviewer@example.com"
        assert corrected.corrected_at is not None
        assert corrected.correction_notes == "checked"

    def test_identification_feeds_identification_tools_only(self, db_session, service, outcome):
        service.correct_outcome(outcome.id, "reviewer", identification_correct=False)

        assert _metric(db_session, "product_identification").identification_accuracy == 0.0
        assert _metric(db_session, "pricing").identification_accuracy is None

    def test_only_first_identification_judgement_counts(self, db_session, service, outcome):
        service.correct_outcome(outcome.id, "reviewer", identification_correct=False)
        service.correct_outcome(outcome.id, "second-reviewer", identification_correct=True)

        metric = _metric(db_session, "product_identification")
        assert metric.identification_accuracy == 0.0
        assert outcome.identification_correct is True

    @pytest.mark.parametrize("kwargs", [
        {"corrected_by": "reviewer"},
        {"corrected_by": " ", "quality": "good"},
        {"corrected_by": "reviewer", "quality": "superb"},
    ])
    def test_invalid_corrections(self, service, outcome, kwargs):
        with pytest.raises(ValidationError):
            service.correct_outcome(outcome.id, **kwargs)


# ===========================================================================
# Effectiveness reads
# ===========================================================================

class TestEffectiveness:
    def test_month_bounds(self):
        start, end = month_bounds(datetime(2026, 12, 15, 8, 30, tzinfo=timezone.utc))

        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_tools_in_averages_repeated_calls(self, db_session, service):
        run = create_success_run(db_session, "item-2", tools=[
            {"tool_type": "comp_search", "confidence": 0.6},
            {"tool_type": "comp_search", "confidence": 0.8},
            {"tool_type": "item_context", "confidence": None},
        ])
        outcome = service.ingest_completed_run(run.id)

        assert tools_in(outcome) == {"comp_search": pytest.approx(0.7), "item_context": None}

    def test_metrics_scoped_by_organization(self, db_session, service):
        service.ingest_completed_run(create_success_run(db_session, "item-a", organization_id="org-a").id)
        service.ingest_completed_run(create_success_run(db_session, "item-b", organization_id="org-b").id)

        effectiveness = EffectivenessService(db_session)
        assert [m.total_uses for m in effectiveness.metrics("org-a", tool_type="pricing")] == [1]
        assert [m.total_uses for m in effectiveness.metrics(tool_type="pricing", all_organizations=True)] == [2]

    def test_window_excludes_old_periods(self, db_session, outcome):
        later = datetime.now(timezone.utc) + timedelta(days=120)

        assert EffectivenessService(db_session).metrics("org-1", period_days=30, now=later) == []

    def test_period_days_must_be_positive(self, db_session):
        with pytest.raises(ValueError):
            EffectivenessService(db_session).metrics("org-1", period_days=0)

    def test_summary(self, db_session, service, outcome):
        service.record_sale(outcome.id, 100.0)
        service.correct_outcome(outcome.id, "reviewer", identification_correct=True)

        summary = EffectivenessService(db_session).summary("org-1")

        assert summary.total_outcomes == 1
        assert summary.average_price_accuracy == 0.0
        assert summary.identification_accuracy == 1.0
        assert summary.outcomes_by_quality["excellent"] == 1
        assert {m.tool_type for m in summary.tools} == {"pricing", "product_identification"}
