"""Canonical run, field and learning vocabularies."""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------

RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_PAUSED = "paused"
RUN_ERROR = "error"
RUN_CANCELLED = "cancelled"
RUN_SUCCESS = "success"

RUN_STATUSES: frozenset[str] = frozenset({
    RUN_PENDING, RUN_RUNNING, RUN_PAUSED, RUN_ERROR, RUN_CANCELLED, RUN_SUCCESS,
})
ACTIVE_RUN_STATUSES: frozenset[str] = frozenset({RUN_PENDING, RUN_RUNNING, RUN_PAUSED})
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({RUN_CANCELLED, RUN_SUCCESS})
RESUMABLE_RUN_STATUSES: frozenset[str] = frozenset({RUN_ERROR, RUN_PAUSED})

RUN_TYPE_INITIAL = "initial_intake"
RUN_TYPE_MANUAL = "manual_request"
RUN_TYPES: frozenset[str] = frozenset({RUN_TYPE_INITIAL, RUN_TYPE_MANUAL})

# Targeted re-search loops allowed after assess_missing, per mode
RESEARCH_MODE_LOOPS: dict[str, int] = {
    "fast": 0,
    "balanced": 1,
    "thorough": 2,
}
RESEARCH_MODES: frozenset[str] = frozenset(RESEARCH_MODE_LOOPS)

STEP_SUCCESS = "success"
STEP_FAILURE = "failure"

# ---------------------------------------------------------------------------
# Field states
# ---------------------------------------------------------------------------

SOURCE_USER = "user_provided"
SOURCE_AI = "ai_inferred"
SOURCE_LOOKUP = "lookup_table"
SOURCE_DEFAULT = "default"

# Higher rank wins; equal rank falls back to confidence
SOURCE_AUTHORITY: dict[str, int] = {
    SOURCE_USER: 3,
    SOURCE_AI: 2,
    SOURCE_LOOKUP: 1,
    SOURCE_DEFAULT: 0,
}

FIELD_MISSING = "missing"
FIELD_LOW_CONFIDENCE = "low_confidence"
FIELD_CONFIRMED = "confirmed"

REQUIRED_FIELD_WEIGHT = 2.0
OPTIONAL_FIELD_WEIGHT = 1.0

REQUIRED_FIELDS: tuple[str, ...] = ("title", "brand", "model", "category", "condition", "price")
OPTIONAL_FIELDS: tuple[str, ...] = ("description", "upc", "color", "size", "material", "year")

# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------

QUALITY_EXCELLENT = "excellent"
QUALITY_GOOD = "good"
QUALITY_FAIR = "fair"
QUALITY_POOR = "poor"
OUTCOME_QUALITIES: frozenset[str] = frozenset({
    QUALITY_EXCELLENT, QUALITY_GOOD, QUALITY_FAIR, QUALITY_POOR,
})

ANOMALY_PRICE_DEVIATION = "price_deviation"
ANOMALY_TOOL_FAILURE_SPIKE = "tool_failure_spike"
ANOMALY_CONFIDENCE_MISCALIBRATION = "confidence_miscalibration"
ANOMALY_CATEGORY_MISIDENTIFICATION = "category_misidentification"
ANOMALY_SLOW_SALES = "slow_sales"
ANOMALY_OUTCOME_OUTLIER = "outcome_outlier"
ANOMALY_TYPES: frozenset[str] = frozenset({
    ANOMALY_PRICE_DEVIATION,
    ANOMALY_TOOL_FAILURE_SPIKE,
    ANOMALY_CONFIDENCE_MISCALIBRATION,
    ANOMALY_CATEGORY_MISIDENTIFICATION,
    ANOMALY_SLOW_SALES,
    ANOMALY_OUTCOME_OUTLIER,
})

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
SEVERITY_RANK: dict[str, int] = {SEVERITY_INFO: 0, SEVERITY_WARNING: 1, SEVERITY_CRITICAL: 2}

# Tools calibrated together share a family
TOOL_FAMILIES: dict[str, str] = {
    "vision_analysis": "identification",
    "product_identification": "identification",
    "upc_lookup": "identification",
    "comp_search": "market",
    "comp_analysis": "market",
    "pricing": "pricing",
}
DEFAULT_TOOL_FAMILY = "general"


def tool_family(tool_type: str) -> str:
    """Return the calibration family for *tool_type*."""
    return TOOL_FAMILIES.get(tool_type, DEFAULT_TOOL_FAMILY)
