"""Typed checkpoint payloads.

Everything the executor writes to ``research_runs`` passes through these
models first; a payload that fails validation raises
``itemresearch.core.errors.ValidationError`` and nothing is written.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from itemresearch.core.errors import ValidationError
from itemresearch.research.schemas import FieldUpdate

StepOutcome = Literal["success", "failure"]


class StepHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    node: str = Field(min_length=1)
    attempt_number: int = Field(ge=1)
    started_at: datetime
    completed_at: datetime
    outcome: StepOutcome
    error_summary: str | None = None


class ToolCallRecord(BaseModel):
    tool_name: str
    succeeded: bool
    duration_ms: int = Field(ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    input_summary: str = ""
    output_summary: str = ""
    error: str | None = None
    timed_out: bool = False


class NodeOutput(BaseModel):
    """What a node handler returns on success."""

    model_config = ConfigDict(extra="forbid")

    field_updates: list[FieldUpdate] = Field(default_factory=list)
    required_fields: list[str] = Field(default_factory=list)
    context_updates: dict[str, Any] = Field(default_factory=dict)
    cost_usd: float = Field(default=0.0, ge=0.0)
    messages: list[str] = Field(default_factory=list)
    summary: str | None = None


class ResearchConstraints(BaseModel):
    """Immutable limits captured when a run starts."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    retry_max_attempts: int = Field(default=3, ge=1)
    retry_node_count: int = Field(default=8, ge=1)
    node_max_attempts: int = Field(default=3, ge=1)
    max_research_loops: int = Field(default=1, ge=0)
    completion_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    confirm_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    # tool family -> CalibrationResult id
    calibration_versions: dict[str, str] = Field(default_factory=dict)

    @property
    def retry_budget(self) -> int:
        return self.retry_max_attempts * self.retry_node_count

    def budget_exhausted(self, step_count: int) -> bool:
        return step_count >= self.retry_budget


class RunState(BaseModel):
    """Validated snapshot of a run row, as the executor sees it."""

    id: UUID
    item_id: str
    organization_id: str | None = None
    status: str
    pause_requested: bool = False
    research_mode: str = "balanced"
    current_node: str | None = None
    step_count: int = Field(default=0, ge=0)
    step_history: list[StepHistoryEntry] = Field(default_factory=list)
    field_states: dict[str, dict[str, Any]] = Field(default_factory=dict)
    context_data: dict[str, Any] = Field(default_factory=dict)
    research_cost_usd: float = 0.0
    constraints: ResearchConstraints = Field(default_factory=ResearchConstraints)
    log_sequence: int = 0
    checkpoint_version: int = 0

    @property
    def last_entry(self) -> StepHistoryEntry | None:
        return self.step_history[-1] if self.step_history else None

    def trailing_failures(self, node: str) -> int:
        """Consecutive failure entries for *node* at the end of the history."""
        count = 0
        for entry in reversed(self.step_history):
            if entry.node != node or entry.outcome != "failure":
                break
            count += 1
        return count

    def successes(self, node: str) -> int:
        return sum(1 for e in self.step_history if e.node == node and e.outcome == "success")


def parse_node_output(raw: Any, node: str) -> NodeOutput:
    if isinstance(raw, NodeOutput):
        raw = raw.model_dump()
    try:
        return NodeOutput.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Node {node!r} returned an invalid payload: {exc.error_count()} error(s)") from exc


def parse_constraints(raw: Any) -> ResearchConstraints:
    try:
        return ResearchConstraints.model_validate(raw or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid research constraints: {exc.error_count()} error(s)") from exc
