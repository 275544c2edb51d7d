"""Pipeline executor: drives one run through the research graph.

The executor is stateless between calls to ``execute()``; everything it
needs is in the run row.  One call processes nodes until the run leaves
``running`` (completed, failed, paused, stopped) or the lease is lost.

Per node:

- check status and ``pause_requested`` (cooperative, at node boundaries),
- refuse to start when the run-level retry budget is exhausted,
- count the attempt (``step_count + 1``) before invoking the handler,
- run the handler under one deadline for the whole node; tool calls get the
  time left and a handler that returns late counts as a timeout,
- commit one checkpoint: history entry, field updates, context, cost and
  activity entries together.

``ToolInvocationError`` is retried with exponential back-off (tenacity) up to
the node's attempt bound, after which the run fails.  ``ValidationError`` is
never retried.  ``PersistenceError`` aborts without touching status; the
run's lease then expires and recovery picks it up.
"""
from __future__ import annotations

import copy
import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from uuid import UUID

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from itemresearch.activity.activity_log import ActivityDraft
from itemresearch.activity.events import (
    CHANNEL_NODE,
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_PROGRESS,
    STATUS_ERROR,
    STATUS_INFO,
    STATUS_SUCCESS,
    TYPE_FIELD_UPDATE,
    TYPE_NODE,
    TYPE_PROGRESS,
    TYPE_RUN_STATUS,
    TYPE_TOOL_CALL,
)
from itemresearch.core.clock import utcnow
from itemresearch.core.constants import (
    RUN_ERROR,
    RUN_PAUSED,
    RUN_RUNNING,
    RUN_SUCCESS,
    SOURCE_USER,
)
from itemresearch.core.errors import (
    ConcurrencyConflict,
    PersistenceError,
    RetryBudgetExceeded,
    ToolInvocationError,
    ValidationError,
)
from itemresearch.core.settings import Settings, get_settings
from itemresearch.pipeline.checkpoint import CheckpointStore
from itemresearch.pipeline.graph import NodeContext, NodeSpec, PipelineGraph
from itemresearch.pipeline.schemas import (
    NodeOutput,
    RunState,
    StepHistoryEntry,
    ToolCallRecord,
    parse_node_output,
)
from itemresearch.pipeline.tools import TimedToolInvoker, ToolInvoker
from itemresearch.research.fields import FieldConfidenceTracker
from itemresearch.research.schemas import FieldUpdateResult

logger = logging.getLogger(__name__)

WeightsLoader = Callable[[dict[str, str]], dict[str, float]]
RunHook = Callable[[UUID], None]


class _NodeInterrupted(Exception):
    """Run was paused or stopped between attempts."""


class PipelineExecutor:
    def __init__(
        self,
        store: CheckpointStore,
        graph: PipelineGraph,
        tools: ToolInvoker,
        settings: Settings | None = None,
        weights_loader: WeightsLoader | None = None,
        on_success: RunHook | None = None,
        sleep: Callable[[float], None] = time.sleep,
        tool_pool: ThreadPoolExecutor | None = None,
    ) -> None:
        self.store = store
        self.graph = graph
        self.tools = tools
        self.settings = settings or get_settings()
        self._weights_loader = weights_loader
        self._on_success = on_success
        self._sleep = sleep
        self._tool_pool = tool_pool or ThreadPoolExecutor(max_workers=4, thread_name_prefix="research-tool")

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def execute(self, run_id: UUID, holder_id: str) -> str:
        """Run until the run leaves ``running``. Returns the status observed last."""
        try:
            state = self.store.begin_run(self.store.load(run_id), holder_id)
            weights = self._load_weights(state)
            while True:
                state = self.store.load(run_id)
                if state.status != RUN_RUNNING:
                    logger.info("Run %s is %s; executor exiting", run_id, state.status)
                    return state.status
                if state.pause_requested:
                    return self._finish(state, holder_id, RUN_PAUSED, "Run paused")

                fields = self._tracker(state)
                node = self.graph.next_node(state, fields)
                if node is None:
                    return self._complete(state, holder_id)
                if state.constraints.budget_exhausted(state.step_count):
                    raise RetryBudgetExceeded(state.step_count, state.constraints.retry_budget)

                self._run_node(run_id, holder_id, self.graph.node(node), weights)
        except ConcurrencyConflict as exc:
            logger.warning("Executor for run %s lost ownership: %s", run_id, exc)
            return self._current_status(run_id)
        except PersistenceError as exc:
            logger.error("Run %s aborted on checkpoint failure: %s", run_id, exc)
            return RUN_RUNNING
        except RetryBudgetExceeded as exc:
            return self._fail(run_id, holder_id, str(exc))
        except ToolInvocationError as exc:
            return self._fail(run_id, holder_id, f"Node failed after retries: {exc}")
        except ValidationError as exc:
            return self._fail(run_id, holder_id, str(exc))
        except (KeyError, ValueError) as exc:
            logger.exception("Run %s hit a graph error", run_id)
            return self._fail(run_id, holder_id, f"Graph error: {exc}")

    def _run_node(self, run_id: UUID, holder_id: str, spec: NodeSpec, weights: dict[str, float]) -> None:
        state = self.store.load(run_id)
        max_attempts = spec.max_attempts or state.constraints.node_max_attempts
        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.node_retry_base_delay_s,
                max=self.settings.node_retry_max_delay_s,
            ),
            retry=retry_if_exception_type(ToolInvocationError),
            sleep=self._sleep,
            before_sleep=lambda rs: logger.info(
                "Retrying node %s for run %s (attempt %d failed: %s)",
                spec.name, run_id, rs.attempt_number, rs.outcome.exception(),
            ),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._attempt(run_id, holder_id, spec, weights)
        except _NodeInterrupted:
            logger.info("Run %s interrupted before retrying %s", run_id, spec.name)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _attempt(self, run_id: UUID, holder_id: str, spec: NodeSpec, weights: dict[str, float]) -> None:
        state = self.store.load(run_id)
        if state.status != RUN_RUNNING or state.pause_requested:
            raise _NodeInterrupted()
        if state.constraints.budget_exhausted(state.step_count):
            raise RetryBudgetExceeded(state.step_count, state.constraints.retry_budget)

        attempt_number = state.trailing_failures(spec.name) + 1
        step_id = f"{spec.name}#{attempt_number}"
        started_at = utcnow()
        state = self.store.begin_attempt(state, holder_id)
        self._publish_node_started(state, spec, attempt_number)

        fields = self._tracker(state)
        invoker = TimedToolInvoker(
            self.tools,
            spec.timeout_s or self.settings.node_timeout_s,
            self._tool_pool,
        )
        ctx = NodeContext(
            run_id=state.id,
            item_id=state.item_id,
            organization_id=state.organization_id,
            research_mode=state.research_mode,
            attempt_number=attempt_number,
            fields=fields.copy(),
            context=copy.deepcopy(state.context_data),
            constraints=state.constraints,
            tools=invoker,
            step_history=list(state.step_history),
        )

        try:
            output = parse_node_output(spec.handler(ctx), spec.name)
            invoker.check_deadline(spec.tool_name or spec.name)
            results = self._apply_field_updates(spec, output, fields, weights)
            context = self._merge_context(state, spec, output, invoker.calls, results)
        except (ToolInvocationError, ValidationError) as exc:
            self._record_failure(state, holder_id, spec, attempt_number, step_id, started_at, exc, invoker.calls)
            raise
        except Exception as exc:
            self._record_failure(state, holder_id, spec, attempt_number, step_id, started_at, exc, invoker.calls)
            raise ValidationError(f"Node {spec.name!r} raised {type(exc).__name__}: {exc}") from exc

        entry = StepHistoryEntry(
            node=spec.name,
            attempt_number=attempt_number,
            started_at=started_at,
            completed_at=utcnow(),
            outcome="success",
        )
        drafts = self._tool_drafts(spec, step_id, invoker.calls)
        drafts.extend(
            ActivityDraft(
                type=TYPE_PROGRESS,
                event_type=EVENT_PROGRESS,
                title=spec.name,
                message=message,
                status=STATUS_INFO,
                operation_id=step_id,
                operation_type=spec.name,
                step_id=step_id,
            )
            for message in output.messages
        )
        if results:
            drafts.append(self._field_draft(spec, step_id, results))
        drafts.append(
            ActivityDraft(
                type=TYPE_NODE,
                event_type=EVENT_COMPLETED,
                title=f"{spec.name} completed",
                message=output.summary or "",
                status=STATUS_SUCCESS,
                operation_id=step_id,
                operation_type=spec.name,
                step_id=step_id,
                metadata={
                    "attempt_number": attempt_number,
                    "duration_ms": int((entry.completed_at - started_at).total_seconds() * 1000),
                    "completion_score": fields.compute_completion_score(),
                },
            )
        )
        cost = output.cost_usd + sum(call.cost_usd for call in invoker.calls)
        self.store.commit_step(
            state,
            holder_id,
            entry,
            drafts,
            field_states=fields.to_payload(),
            context_data=context,
            cost_delta=cost,
        )
        logger.info("Run %s node %s succeeded (attempt %d)", state.id, spec.name, attempt_number)

    def _apply_field_updates(
        self,
        spec: NodeSpec,
        output: NodeOutput,
        fields: FieldConfidenceTracker,
        weights: dict[str, float],
    ) -> list[FieldUpdateResult]:
        if output.required_fields and not spec.seeds_user_values:
            raise ValidationError(f"Node {spec.name!r} may not change which fields are required")
        for name in output.required_fields:
            fields.mark_required(name)
        results = []
        for update in output.field_updates:
            if update.source == SOURCE_USER and not spec.seeds_user_values:
                raise ValidationError(f"Node {spec.name!r} may not emit user_provided values")
            confidence = update.confidence
            weight = weights.get(update.tool_name) if update.tool_name else None
            if weight is not None:
                confidence = min(1.0, max(0.0, confidence * weight))
            results.append(
                fields.update(update.field_name, update.value, confidence, update.source, updated_by_node=spec.name)
            )
        return results

    def _merge_context(
        self,
        state: RunState,
        spec: NodeSpec,
        output: NodeOutput,
        calls: list[ToolCallRecord],
        results: list[FieldUpdateResult],
    ) -> dict[str, Any]:
        context = {**state.context_data, **output.context_updates}
        applied = [r.field_name for r in results if r.applied]
        tools_used = list(context.get("tools_used") or [])
        now = utcnow().isoformat()
        for call in calls:
            if not call.succeeded:
                continue
            tools_used.append({
                "tool_type": call.tool_name,
                "node": spec.name,
                "confidence": call.confidence,
                "fields_provided": applied,
                "cost": call.cost_usd,
                "executed_at": now,
            })
        context["tools_used"] = tools_used
        try:
            json.dumps(context)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Node {spec.name!r} produced non-serialisable context: {exc}") from exc
        return context

    def _record_failure(
        self,
        state: RunState,
        holder_id: str,
        spec: NodeSpec,
        attempt_number: int,
        step_id: str,
        started_at,
        exc: Exception,
        calls: list[ToolCallRecord],
    ) -> None:
        summary = str(exc)[:500]
        entry = StepHistoryEntry(
            node=spec.name,
            attempt_number=attempt_number,
            started_at=started_at,
            completed_at=utcnow(),
            outcome="failure",
            error_summary=summary,
        )
        drafts = self._tool_drafts(spec, step_id, calls)
        drafts.append(
            ActivityDraft(
                type=TYPE_NODE,
                event_type=EVENT_FAILED,
                title=f"{spec.name} failed",
                message=summary,
                status=STATUS_ERROR,
                operation_id=step_id,
                operation_type=spec.name,
                step_id=step_id,
                metadata={
                    "attempt_number": attempt_number,
                    "error_type": type(exc).__name__,
                    "timed_out": bool(getattr(exc, "timed_out", False)),
                },
            )
        )
        self.store.commit_step(state, holder_id, entry, drafts)
        logger.warning("Run %s node %s failed (attempt %d): %s", state.id, spec.name, attempt_number, summary)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(self, state: RunState, holder_id: str) -> str:
        result = state.context_data.get("result") or {}
        summary = result.get("summary") or f"Research completed in {state.step_count} step(s)"
        status = self._finish(state, holder_id, RUN_SUCCESS, "Research completed", summary=summary)
        if status == RUN_SUCCESS and self._on_success is not None:
            try:
                self._on_success(state.id)
            except Exception:
                logger.exception("Completion hook failed for run %s", state.id)
        return status

    def _fail(self, run_id: UUID, holder_id: str, message: str) -> str:
        try:
            state = self.store.load(run_id)
            if state.status != RUN_RUNNING:
                return state.status
            return self._finish(state, holder_id, RUN_ERROR, "Research failed", error_message=message)
        except (ConcurrencyConflict, PersistenceError) as exc:
            logger.error("Could not mark run %s as failed: %s", run_id, exc)
            return RUN_RUNNING

    def _finish(
        self,
        state: RunState,
        holder_id: str,
        status: str,
        title: str,
        summary: str | None = None,
        error_message: str | None = None,
    ) -> str:
        draft_status = {RUN_SUCCESS: STATUS_SUCCESS, RUN_ERROR: STATUS_ERROR}.get(status, STATUS_INFO)
        draft = ActivityDraft(
            type=TYPE_RUN_STATUS,
            event_type=EVENT_FAILED if status == RUN_ERROR else EVENT_COMPLETED,
            title=title,
            message=error_message or summary or "",
            status=draft_status,
            operation_id=f"run:{state.id}",
            operation_type="run",
            metadata={"status": status, "step_count": state.step_count},
        )
        if self.store.finalize(state, holder_id, status, [draft], summary=summary, error_message=error_message):
            logger.info("Run %s finished with status %s", state.id, status)
            return status
        return self._current_status(state.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tracker(self, state: RunState) -> FieldConfidenceTracker:
        try:
            return FieldConfidenceTracker.from_payload(
                state.field_states, confirm_threshold=state.constraints.confirm_threshold
            )
        except ValueError as exc:
            raise ValidationError(f"Stored field states of run {state.id} are malformed") from exc

    def _load_weights(self, state: RunState) -> dict[str, float]:
        pins = state.constraints.calibration_versions
        if not pins or self._weights_loader is None:
            return {}
        return self._weights_loader(pins)

    def _current_status(self, run_id: UUID) -> str:
        try:
            return self.store.load(run_id).status
        except PersistenceError:
            return RUN_RUNNING

    def _publish_node_started(self, state: RunState, spec: NodeSpec, attempt_number: int) -> None:
        if self.store.broadcaster is None:
            return
        self.store.broadcaster.publish(
            CHANNEL_NODE,
            state.id,
            state.organization_id,
            {"item_id": state.item_id, "node": spec.name, "attempt_number": attempt_number, "event_type": "started"},
        )

    def _tool_drafts(self, spec: NodeSpec, step_id: str, calls: list[ToolCallRecord]) -> list[ActivityDraft]:
        return [
            ActivityDraft(
                type=TYPE_TOOL_CALL,
                event_type=EVENT_COMPLETED if call.succeeded else EVENT_FAILED,
                title=call.tool_name,
                message=call.error or "",
                status=STATUS_SUCCESS if call.succeeded else STATUS_ERROR,
                operation_id=step_id,
                operation_type=spec.name,
                step_id=step_id,
                metadata={
                    "tool": call.tool_name,
                    "input": call.input_summary,
                    "output": call.output_summary,
                    "duration_ms": call.duration_ms,
                    "cost_usd": call.cost_usd,
                    "confidence": call.confidence,
                    "timed_out": call.timed_out,
                },
            )
            for call in calls
        ]

    def _field_draft(self, spec: NodeSpec, step_id: str, results: list[FieldUpdateResult]) -> ActivityDraft:
        applied = [r for r in results if r.applied]
        rejected = [r for r in results if not r.applied]
        return ActivityDraft(
            type=TYPE_FIELD_UPDATE,
            event_type=EVENT_PROGRESS,
            title=f"{len(applied)} field update(s) applied",
            message=f"{len(rejected)} rejected" if rejected else "",
            status=STATUS_INFO,
            operation_id=step_id,
            operation_type=spec.name,
            step_id=step_id,
            metadata={
                "applied": [{"field": r.field_name, "confidence": r.confidence} for r in applied],
                "rejected": [{"field": r.field_name, "reason": r.reason} for r in rejected],
            },
        )
