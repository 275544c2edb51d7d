"""Exception taxonomy for research runs.

Every error raised across a component boundary derives from
``ResearchError`` and carries the HTTP status the API layer maps it to.
"""
from __future__ import annotations


class ResearchError(Exception):
    """Base class for all research pipeline errors."""

    status_code = 500
    error_code = "research_error"


class NotFound(ResearchError):
    status_code = 404
    error_code = "not_found"


class RunNotFound(NotFound):
    error_code = "run_not_found"

    def __init__(self, run_id: object) -> None:
        self.run_id = run_id
        super().__init__(f"ResearchRun {run_id} not found")


class InvalidState(ResearchError):
    """Operation not permitted from the run's current state."""

    status_code = 409
    error_code = "invalid_state"

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class ValidationError(ResearchError):
    """Malformed node output, checkpoint payload or field update."""

    status_code = 422
    error_code = "validation_error"


class ToolInvocationError(ResearchError):
    """A research tool failed or exceeded its timeout. Retryable."""

    status_code = 502
    error_code = "tool_invocation_error"

    def __init__(self, tool_name: str, message: str, timed_out: bool = False) -> None:
        self.tool_name = tool_name
        self.timed_out = timed_out
        super().__init__(f"{tool_name}: {message}")


class RetryBudgetExceeded(ResearchError):
    status_code = 409
    error_code = "retry_budget_exceeded"

    def __init__(self, step_count: int, budget: int) -> None:
        self.step_count = step_count
        self.budget = budget
        super().__init__(f"Retry budget exhausted ({step_count}/{budget} attempts used)")


class ConcurrencyConflict(ResearchError):
    """Another active run or a live lease already owns the item/run."""

    status_code = 409
    error_code = "concurrency_conflict"


class PersistenceError(ResearchError):
    """A checkpoint write failed. Nothing from the attempt was persisted."""

    status_code = 503
    error_code = "persistence_error"
