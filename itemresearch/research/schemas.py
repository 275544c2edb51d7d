"""Typed payloads for per-field research state."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

FieldSource = Literal["user_provided", "ai_inferred", "lookup_table", "default"]
FieldStatus = Literal["missing", "low_confidence", "confirmed"]


class FieldState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field_name: str = Field(min_length=1)
    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: FieldSource = "default"
    status: FieldStatus = "missing"
    required: bool = False
    last_updated_by_node: str | None = None
    attempts: int = Field(default=0, ge=0)


class FieldUpdate(BaseModel):
    """A proposed value for one field, as produced by a node."""

    model_config = ConfigDict(extra="forbid")

    field_name: str = Field(min_length=1)
    value: Any = None
    confidence: float = Field(ge=0.0, le=1.0)
    source: FieldSource = "ai_inferred"
    tool_name: str | None = None


class FieldUpdateResult(BaseModel):
    field_name: str
    applied: bool
    reason: str
    previous_source: FieldSource | None = None
    previous_confidence: float | None = None
    confidence: float


class ReadinessThresholds(BaseModel):
    completion_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    confirm_threshold: float = Field(default=0.70, ge=0.0, le=1.0)


class ReadinessReport(BaseModel):
    ready_to_publish: bool
    completion_score: float
    missing_required: list[str]
    low_confidence: list[str]
