"""Tests for itemresearch/pipeline/graph.py and the default research graph."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from itemresearch.pipeline.graph import Branch, NodeSpec, PipelineGraph
from itemresearch.pipeline.nodes import (
    GRAPH_VERSION,
    NODE_ANALYZE_COMPS,
    NODE_ASSESS_MISSING,
    NODE_LOAD_CONTEXT,
    NODE_PERSIST_RESULTS,
    NODE_SEARCH_COMPS,
    build_research_graph,
    select_after_assessment,
)
from itemresearch.pipeline.schemas import NodeOutput, ResearchConstraints, RunState, StepHistoryEntry
from itemresearch.research.fields import FieldConfidenceTracker

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _noop(ctx):
    return NodeOutput()


def _entry(node, outcome="success", attempt=1):
    return StepHistoryEntry(
        node=node, attempt_number=attempt, started_at=NOW, completed_at=NOW, outcome=outcome
    )


def _state(history, context=None, loops=1):
    return RunState(
        id=uuid4(),
        item_id="item-1",
        status="running",
        step_history=history,
        context_data=context or {},
        constraints=ResearchConstraints(max_research_loops=loops),
    )


# ===========================================================================
# Construction
# ===========================================================================

class TestValidation:
    def test_missing_entry_raises(self):
        with pytest.raises(ValueError, match="Entry node"):
            PipelineGraph("g", [NodeSpec("a", _noop)], entry="b")

    def test_duplicate_node_raises(self):
        with pytest.raises(ValueError, match="Duplicate"):
            PipelineGraph("g", [NodeSpec("a", _noop), NodeSpec("a", _noop)], entry="a")

    def test_edge_to_undefined_node_raises(self):
        with pytest.raises(ValueError, match="undefined node"):
            PipelineGraph("g", [NodeSpec("a", _noop)], entry="a", edges={"a": "b"})

    def test_unreachable_node_raises(self):
        with pytest.raises(ValueError, match="unreachable"):
            PipelineGraph("g", [NodeSpec("a", _noop), NodeSpec("b", _noop)], entry="a")

    def test_branch_with_undefined_target_raises(self):
        branch = Branch(targets=frozenset({"a", "z"}), selector=lambda f, c, k: "a")
        with pytest.raises(ValueError, match="undefined nodes"):
            PipelineGraph("g", [NodeSpec("a", _noop)], entry="a", branches={"a": branch})

    def test_cycle_without_terminal_raises(self):
        nodes = [NodeSpec("a", _noop), NodeSpec("b", _noop)]
        with pytest.raises(ValueError, match="no terminal"):
            PipelineGraph("g", nodes, entry="a", edges={"a": "b", "b": "a"})

    def test_edge_and_branch_on_same_node_raises(self):
        nodes = [NodeSpec("a", _noop), NodeSpec("b", _noop)]
        branch = Branch(targets=frozenset({"b"}), selector=lambda f, c, k: "b")
        with pytest.raises(ValueError, match="both an edge and a branch"):
            PipelineGraph("g", nodes, entry="a", edges={"a": "b"}, branches={"a": branch})

    def test_default_graph_is_valid(self):
        graph = build_research_graph()
        assert graph.version == GRAPH_VERSION
        assert graph.node_count == 8
        assert graph.node_names[0] == NODE_LOAD_CONTEXT

    def test_unknown_node_lookup_raises_key_error(self):
        with pytest.raises(KeyError):
            build_research_graph().node("nope")


# ===========================================================================
# Resume rule
# ===========================================================================

class TestNextNode:
    def setup_method(self):
        self.graph = build_research_graph()
        self.fields = FieldConfidenceTracker.with_default_fields()

    def test_no_history_starts_at_entry(self):
        assert self.graph.next_node(_state([]), self.fields) == NODE_LOAD_CONTEXT

    def test_success_moves_to_successor(self):
        history = [_entry(NODE_LOAD_CONTEXT)]
        assert self.graph.next_node(_state(history), self.fields) == "analyze_media"

    def test_failure_retries_same_node(self):
        history = [_entry(NODE_LOAD_CONTEXT), _entry("analyze_media", "failure")]
        assert self.graph.next_node(_state(history), self.fields) == "analyze_media"

    def test_terminal_success_returns_none(self):
        history = [_entry(NODE_PERSIST_RESULTS)]
        assert self.graph.next_node(_state(history), self.fields) is None

    def test_branch_re_searches_when_research_needed(self):
        history = [_entry(NODE_ASSESS_MISSING)]
        context = {"assessment": {"needs_research": ["price"], "loops_used": 0}}
        assert self.graph.next_node(_state(history, context), self.fields) == NODE_SEARCH_COMPS

    def test_branch_persists_when_loops_used_up(self):
        history = [_entry(NODE_ASSESS_MISSING)]
        context = {"assessment": {"needs_research": ["price"], "loops_used": 1}}
        assert self.graph.next_node(_state(history, context, loops=1), self.fields) == NODE_PERSIST_RESULTS

    def test_undeclared_branch_target_raises(self):
        nodes = [NodeSpec("a", _noop), NodeSpec("b", _noop)]
        branch = Branch(targets=frozenset({"b"}), selector=lambda f, c, k: "a")
        graph = PipelineGraph("g", nodes, entry="a", branches={"a": branch})

        with pytest.raises(ValueError, match="undeclared target"):
            graph.next_node(_state([_entry("a")]), self.fields)


class TestSelectAfterAssessment:
    def test_fast_mode_never_re_searches(self):
        fields = FieldConfidenceTracker()
        context = {"assessment": {"needs_research": ["brand"], "loops_used": 0}}
        assert select_after_assessment(fields, context, ResearchConstraints(max_research_loops=0)) == NODE_PERSIST_RESULTS

    def test_nothing_to_research_persists(self):
        fields = FieldConfidenceTracker()
        context = {"assessment": {"needs_research": [], "loops_used": 0}}
        assert select_after_assessment(fields, context, ResearchConstraints(max_research_loops=2)) == NODE_PERSIST_RESULTS

    def test_analyze_comps_follows_search(self):
        graph = build_research_graph()
        fields = FieldConfidenceTracker()
        assert graph.successor(NODE_SEARCH_COMPS, fields, {}, ResearchConstraints()) == NODE_ANALYZE_COMPS
