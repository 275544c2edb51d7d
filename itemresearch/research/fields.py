"""Per-field confidence tracking and publish readiness.

Every proposed value goes through ``FieldConfidenceTracker.update()``, which
applies the source-authority merge rule:

    user_provided > ai_inferred > lookup_table > default

An update replaces the current value only if its source ranks strictly
higher, or ranks the same with confidence >= the current confidence.
A ``user_provided`` value is replaced only by another explicit user write.

The completion score is the weighted mean of per-field confidences with
required fields weighted 2.0 and optional fields 1.0; a field without a
value contributes 0.  The score is 0.0 when no fields are tracked.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from itemresearch.core.constants import (
    FIELD_CONFIRMED,
    FIELD_LOW_CONFIDENCE,
    FIELD_MISSING,
    OPTIONAL_FIELD_WEIGHT,
    OPTIONAL_FIELDS,
    REQUIRED_FIELD_WEIGHT,
    REQUIRED_FIELDS,
    SOURCE_AUTHORITY,
    SOURCE_USER,
)
from itemresearch.research.schemas import (
    FieldState,
    FieldUpdateResult,
    ReadinessReport,
    ReadinessThresholds,
)

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return isinstance(value, (list, dict)) and not value


class FieldConfidenceTracker:
    """Track field values, their provenance and their confidence."""

    def __init__(self, confirm_threshold: float = 0.70) -> None:
        self.confirm_threshold = confirm_threshold
        self._fields: dict[str, FieldState] = {}

    # ------------------------------------------------------------------
    # Construction / serialisation
    # ------------------------------------------------------------------

    @classmethod
    def with_default_fields(cls, confirm_threshold: float = 0.70) -> FieldConfidenceTracker:
        tracker = cls(confirm_threshold=confirm_threshold)
        tracker.initialize(REQUIRED_FIELDS, required=True)
        tracker.initialize(OPTIONAL_FIELDS, required=False)
        return tracker

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None, confirm_threshold: float = 0.70) -> FieldConfidenceTracker:
        tracker = cls(confirm_threshold=confirm_threshold)
        for name, raw in (payload or {}).items():
            state = FieldState.model_validate(raw)
            if state.field_name != name:
                raise ValueError(f"Field state key {name!r} does not match field_name {state.field_name!r}")
            tracker._fields[name] = state
        return tracker

    def to_payload(self) -> dict[str, dict[str, Any]]:
        return {name: state.model_dump(mode="json") for name, state in self._fields.items()}

    def copy(self) -> FieldConfidenceTracker:
        return FieldConfidenceTracker.from_payload(self.to_payload(), confirm_threshold=self.confirm_threshold)

    def initialize(self, field_names: Iterable[str], required: bool) -> None:
        """Start tracking *field_names*; already tracked fields only get their flag updated."""
        for name in field_names:
            existing = self._fields.get(name)
            if existing is not None:
                existing.required = existing.required or required
                continue
            self._fields[name] = FieldState(field_name=name, required=required)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, field_name: str) -> FieldState | None:
        return self._fields.get(field_name)

    def states(self) -> dict[str, FieldState]:
        return dict(self._fields)

    def __contains__(self, field_name: object) -> bool:
        return field_name in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def canonical_fields(self) -> dict[str, Any]:
        """Snapshot of ``{field: value}`` for every field holding a value."""
        return {
            name: state.value
            for name, state in self._fields.items()
            if state.status != FIELD_MISSING
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update(
        self,
        field_name: str,
        value: Any,
        confidence: float,
        source: str,
        updated_by_node: str | None = None,
    ) -> FieldUpdateResult:
        """Apply one proposed value under the merge rule.

        Empty values (``None``, blank strings, empty containers) never
        replace anything.  Rejections are logged and reported, not raised.
        """
        if source not in SOURCE_AUTHORITY:
            raise ValueError(f"Unknown field source {source!r}; must be one of {sorted(SOURCE_AUTHORITY)}")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence!r}")

        state = self._fields.get(field_name)
        if state is None:
            state = FieldState(field_name=field_name, required=False)
            self._fields[field_name] = state

        previous_source = state.source if state.status != FIELD_MISSING else None
        previous_confidence = state.confidence if state.status != FIELD_MISSING else None

        if _is_empty(value):
            return self._reject(state, confidence, "empty value", previous_source, previous_confidence)

        state.attempts += 1

        if state.status != FIELD_MISSING:
            if state.source == SOURCE_USER and source != SOURCE_USER:
                return self._reject(state, confidence, "user value is authoritative", previous_source, previous_confidence)
            current_rank = SOURCE_AUTHORITY[state.source]
            new_rank = SOURCE_AUTHORITY[source]
            if new_rank < current_rank:
                return self._reject(state, confidence, "less authoritative source", previous_source, previous_confidence)
            if new_rank == current_rank and confidence < state.confidence:
                return self._reject(state, confidence, "lower confidence", previous_source, previous_confidence)

        state.value = value
        state.confidence = confidence
        state.source = source
        state.last_updated_by_node = updated_by_node
        state.status = self._status_for(confidence)

        return FieldUpdateResult(
            field_name=field_name,
            applied=True,
            reason="applied",
            previous_source=previous_source,
            previous_confidence=previous_confidence,
            confidence=confidence,
        )

    def set_user_value(self, field_name: str, value: Any) -> FieldUpdateResult:
        """Record an explicit user edit; always wins over inferred values."""
        return self.update(field_name, value, 1.0, SOURCE_USER, updated_by_node="user")

    def mark_required(self, field_name: str) -> None:
        state = self._fields.get(field_name)
        if state is None:
            self._fields[field_name] = FieldState(field_name=field_name, required=True)
        else:
            state.required = True

    def _status_for(self, confidence: float) -> str:
        return FIELD_CONFIRMED if confidence >= self.confirm_threshold else FIELD_LOW_CONFIDENCE

    def _reject(
        self,
        state: FieldState,
        confidence: float,
        reason: str,
        previous_source: str | None,
        previous_confidence: float | None,
    ) -> FieldUpdateResult:
        logger.debug("Field update rejected: field=%s reason=%s", state.field_name, reason)
        return FieldUpdateResult(
            field_name=state.field_name,
            applied=False,
            reason=reason,
            previous_source=previous_source,
            previous_confidence=previous_confidence,
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def compute_completion_score(self) -> float:
        total_weight = 0.0
        weighted = 0.0
        for state in self._fields.values():
            weight = REQUIRED_FIELD_WEIGHT if state.required else OPTIONAL_FIELD_WEIGHT
            total_weight += weight
            if state.status != FIELD_MISSING:
                weighted += weight * state.confidence
        if total_weight == 0:
            return 0.0
        return round(weighted / total_weight, 6)

    def missing_required(self) -> list[str]:
        return [
            name for name, state in self._fields.items()
            if state.required and state.status == FIELD_MISSING
        ]

    def low_confidence(self) -> list[str]:
        return [
            name for name, state in self._fields.items()
            if state.status == FIELD_LOW_CONFIDENCE
        ]

    def compute_ready_to_publish(self, thresholds: ReadinessThresholds | None = None) -> bool:
        return self.readiness(thresholds).ready_to_publish

    def readiness(self, thresholds: ReadinessThresholds | None = None) -> ReadinessReport:
        thresholds = thresholds or ReadinessThresholds(confirm_threshold=self.confirm_threshold)
        score = self.compute_completion_score()
        missing = self.missing_required()
        return ReadinessReport(
            ready_to_publish=not missing and score >= thresholds.completion_threshold,
            completion_score=score,
            missing_required=missing,
            low_confidence=self.low_confidence(),
        )

    def fields_needing_research(self) -> list[str]:
        """Fields without a confirmed value: required first, then least confident, then least tried."""
        pending = [state for state in self._fields.values() if state.status != FIELD_CONFIRMED]
        pending.sort(key=lambda s: (not s.required, s.confidence, s.attempts, s.field_name))
        return [state.field_name for state in pending]
