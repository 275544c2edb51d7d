"""Default research graph.

    load_context -> analyze_media -> identify_product -> search_comps
        -> analyze_comps -> calculate_price -> assess_missing
        -> {search_comps (targeted re-search) | persist_results}

Handlers only read their ``NodeContext`` and return a ``NodeOutput``; the
executor owns merging field updates and writing checkpoints.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from itemresearch.core.constants import SOURCE_AI, SOURCE_LOOKUP, SOURCE_USER
from itemresearch.pipeline.graph import Branch, NodeContext, NodeSpec, PipelineGraph
from itemresearch.pipeline.schemas import NodeOutput, ResearchConstraints
from itemresearch.pipeline.tools import ToolResult
from itemresearch.research.fields import FieldConfidenceTracker
from itemresearch.research.schemas import FieldUpdate, ReadinessThresholds

logger = logging.getLogger(__name__)

GRAPH_VERSION = "research-graph/1"

NODE_LOAD_CONTEXT = "load_context"
NODE_ANALYZE_MEDIA = "analyze_media"
NODE_IDENTIFY_PRODUCT = "identify_product"
NODE_SEARCH_COMPS = "search_comps"
NODE_ANALYZE_COMPS = "analyze_comps"
NODE_CALCULATE_PRICE = "calculate_price"
NODE_ASSESS_MISSING = "assess_missing"
NODE_PERSIST_RESULTS = "persist_results"

TOOL_ITEM_CONTEXT = "item_context"
TOOL_VISION = "vision_analysis"
TOOL_IDENTIFICATION = "product_identification"
TOOL_UPC_LOOKUP = "upc_lookup"
TOOL_COMP_SEARCH = "comp_search"
TOOL_COMP_ANALYSIS = "comp_analysis"
TOOL_PRICING = "pricing"

DEFAULT_TOOL_CONFIDENCE = 0.5
MAX_COMPS = 50


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _clamp(value: Any, default: float = DEFAULT_TOOL_CONFIDENCE) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, number))


def field_updates_from(result: ToolResult, tool_name: str, source: str = SOURCE_AI) -> list[FieldUpdate]:
    """Turn a tool's ``{"fields": {...}}`` output into field updates.

    Each entry is either a bare value (uses the result's confidence) or a
    ``{"value": ..., "confidence": ...}`` mapping.
    """
    updates = []
    for name, raw in (result.output.get("fields") or {}).items():
        if isinstance(raw, Mapping):
            value = raw.get("value")
            confidence = _clamp(raw.get("confidence", result.confidence))
        else:
            value = raw
            confidence = _clamp(result.confidence)
        updates.append(
            FieldUpdate(field_name=name, value=value, confidence=confidence, source=source, tool_name=tool_name)
        )
    return updates


def _merge_comps(existing: list[dict], incoming: list[dict]) -> list[dict]:
    seen = {str(c.get("id")) for c in existing if c.get("id") is not None}
    merged = list(existing)
    for comp in incoming:
        key = comp.get("id")
        if key is not None and str(key) in seen:
            continue
        if key is not None:
            seen.add(str(key))
        merged.append(comp)
    return merged[-MAX_COMPS:]


# ---------------------------------------------------------------------------
# Node handlers
# ---------------------------------------------------------------------------

def load_context(ctx: NodeContext) -> NodeOutput:
    result = ctx.tools.invoke(TOOL_ITEM_CONTEXT, {"item_id": ctx.item_id})
    item = result.output.get("item") or {}
    updates = [
        FieldUpdate(field_name=name, value=value, confidence=1.0, source=SOURCE_USER)
        for name, value in (item.get("user_fields") or {}).items()
    ]
    media = list(result.output.get("media") or [])
    required = [str(name) for name in result.output.get("required_fields") or []]
    return NodeOutput(
        field_updates=updates,
        required_fields=required,
        context_updates={
            "item": {k: v for k, v in item.items() if k != "user_fields"},
            "media": media,
        },
        messages=[f"Loaded item with {len(updates)} user field(s) and {len(media)} media file(s)"],
    )


def analyze_media(ctx: NodeContext) -> NodeOutput:
    media = ctx.context.get("media") or []
    if not media:
        return NodeOutput(messages=["No media to analyze"])
    result = ctx.tools.invoke(TOOL_VISION, {"media": media, "known_fields": ctx.fields.canonical_fields()})
    return NodeOutput(
        field_updates=field_updates_from(result, TOOL_VISION),
        context_updates={"media_analysis": result.output.get("observations") or {}},
    )


def identify_product(ctx: NodeContext) -> NodeOutput:
    known = ctx.fields.canonical_fields()
    result = ctx.tools.invoke(
        TOOL_IDENTIFICATION,
        {"known_fields": known, "media_analysis": ctx.context.get("media_analysis") or {}},
    )
    updates = field_updates_from(result, TOOL_IDENTIFICATION)

    upc = known.get("upc") or next((u.value for u in updates if u.field_name == "upc"), None)
    if upc:
        lookup = ctx.tools.invoke(TOOL_UPC_LOOKUP, {"upc": upc})
        updates.extend(field_updates_from(lookup, TOOL_UPC_LOOKUP, source=SOURCE_LOOKUP))

    return NodeOutput(
        field_updates=updates,
        context_updates={"identification": result.output.get("candidates") or []},
    )


def search_comps(ctx: NodeContext) -> NodeOutput:
    assessment = ctx.context.get("assessment") or {}
    focus = assessment.get("needs_research") or []
    result = ctx.tools.invoke(
        TOOL_COMP_SEARCH,
        {"known_fields": ctx.fields.canonical_fields(), "focus_fields": focus},
    )
    comps = _merge_comps(list(ctx.context.get("comps") or []), list(result.output.get("comps") or []))
    message = f"Found {len(result.output.get('comps') or [])} comparable listing(s)"
    if focus:
        message += f" targeting {', '.join(focus)}"
    return NodeOutput(
        field_updates=field_updates_from(result, TOOL_COMP_SEARCH),
        context_updates={"comps": comps},
        messages=[message],
    )


def analyze_comps(ctx: NodeContext) -> NodeOutput:
    comps = ctx.context.get("comps") or []
    if not comps:
        return NodeOutput(context_updates={"comp_analysis": {}}, messages=["No comparables to analyze"])
    result = ctx.tools.invoke(TOOL_COMP_ANALYSIS, {"comps": comps, "known_fields": ctx.fields.canonical_fields()})
    return NodeOutput(
        field_updates=field_updates_from(result, TOOL_COMP_ANALYSIS),
        context_updates={"comp_analysis": result.output.get("analysis") or {}},
    )


def calculate_price(ctx: NodeContext) -> NodeOutput:
    result = ctx.tools.invoke(
        TOOL_PRICING,
        {
            "known_fields": ctx.fields.canonical_fields(),
            "comp_analysis": ctx.context.get("comp_analysis") or {},
        },
    )
    bands = {key: result.output.get(key) for key in ("floor", "target", "ceiling")}
    confidence = _clamp(result.confidence)
    updates = []
    if bands["target"] is not None:
        updates.append(
            FieldUpdate(
                field_name="price",
                value=bands["target"],
                confidence=confidence,
                source=SOURCE_AI,
                tool_name=TOOL_PRICING,
            )
        )
    return NodeOutput(
        field_updates=updates,
        context_updates={"pricing": {**bands, "confidence": confidence}},
    )


def assess_missing(ctx: NodeContext) -> NodeOutput:
    report = ctx.fields.readiness(
        ReadinessThresholds(
            completion_threshold=ctx.constraints.completion_threshold,
            confirm_threshold=ctx.constraints.confirm_threshold,
        )
    )
    needs_research = [
        name for name in ctx.fields.fields_needing_research()
        if ctx.fields.get(name) is not None and ctx.fields.get(name).required
    ]
    loops_used = sum(
        1 for entry in ctx.step_history
        if entry.node == NODE_ASSESS_MISSING and entry.outcome == "success"
    )
    return NodeOutput(
        context_updates={
            "assessment": {
                "ready_to_publish": report.ready_to_publish,
                "completion_score": report.completion_score,
                "missing_required": report.missing_required,
                "low_confidence": report.low_confidence,
                "needs_research": needs_research,
                "loops_used": loops_used,
            }
        },
        messages=[
            f"Completion {report.completion_score:.0%}; "
            f"{len(report.missing_required)} required field(s) missing"
        ],
    )


def persist_results(ctx: NodeContext) -> NodeOutput:
    fields = ctx.fields.canonical_fields()
    pricing = ctx.context.get("pricing") or {}
    report = ctx.fields.readiness(
        ReadinessThresholds(
            completion_threshold=ctx.constraints.completion_threshold,
            confirm_threshold=ctx.constraints.confirm_threshold,
        )
    )
    summary = (
        f"Researched {fields.get('brand') or 'unknown brand'} {fields.get('model') or ''}".rstrip()
        + f"; completion {report.completion_score:.0%}"
        + ("; ready to publish" if report.ready_to_publish else "; needs review")
    )
    return NodeOutput(
        context_updates={
            "result": {
                "canonical_fields": fields,
                "price_floor": pricing.get("floor"),
                "price_target": pricing.get("target"),
                "price_ceiling": pricing.get("ceiling"),
                "category": fields.get("category"),
                "brand": fields.get("brand"),
                "model": fields.get("model"),
                "confidence": report.completion_score,
                "ready_to_publish": report.ready_to_publish,
                "summary": summary,
            }
        },
        summary=summary,
    )


# ---------------------------------------------------------------------------
# Branch and graph
# ---------------------------------------------------------------------------

def select_after_assessment(
    fields: FieldConfidenceTracker,
    context: Mapping[str, Any],
    constraints: ResearchConstraints,
) -> str:
    """Re-search while required fields are unconfirmed and loops remain."""
    assessment = context.get("assessment") or {}
    loops_used = int(assessment.get("loops_used") or 0)
    if assessment.get("needs_research") and loops_used < constraints.max_research_loops:
        return NODE_SEARCH_COMPS
    return NODE_PERSIST_RESULTS


def build_research_graph(node_timeout_s: float | None = None) -> PipelineGraph:
    nodes = [
        NodeSpec(NODE_LOAD_CONTEXT, load_context, tool_name=TOOL_ITEM_CONTEXT,
                 timeout_s=node_timeout_s, seeds_user_values=True),
        NodeSpec(NODE_ANALYZE_MEDIA, analyze_media, tool_name=TOOL_VISION, timeout_s=node_timeout_s),
        NodeSpec(NODE_IDENTIFY_PRODUCT, identify_product, tool_name=TOOL_IDENTIFICATION, timeout_s=node_timeout_s),
        NodeSpec(NODE_SEARCH_COMPS, search_comps, tool_name=TOOL_COMP_SEARCH, timeout_s=node_timeout_s),
        NodeSpec(NODE_ANALYZE_COMPS, analyze_comps, tool_name=TOOL_COMP_ANALYSIS, timeout_s=node_timeout_s),
        NodeSpec(NODE_CALCULATE_PRICE, calculate_price, tool_name=TOOL_PRICING, timeout_s=node_timeout_s),
        NodeSpec(NODE_ASSESS_MISSING, assess_missing),
        NodeSpec(NODE_PERSIST_RESULTS, persist_results),
    ]
    return PipelineGraph(
        version=GRAPH_VERSION,
        nodes=nodes,
        entry=NODE_LOAD_CONTEXT,
        edges={
            NODE_LOAD_CONTEXT: NODE_ANALYZE_MEDIA,
            NODE_ANALYZE_MEDIA: NODE_IDENTIFY_PRODUCT,
            NODE_IDENTIFY_PRODUCT: NODE_SEARCH_COMPS,
            NODE_SEARCH_COMPS: NODE_ANALYZE_COMPS,
            NODE_ANALYZE_COMPS: NODE_CALCULATE_PRICE,
            NODE_CALCULATE_PRICE: NODE_ASSESS_MISSING,
        },
        branches={
            NODE_ASSESS_MISSING: Branch(
                targets=frozenset({NODE_SEARCH_COMPS, NODE_PERSIST_RESULTS}),
                selector=select_after_assessment,
            ),
        },
    )
