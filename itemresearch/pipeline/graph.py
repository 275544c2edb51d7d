"""Explicit research graph: named nodes, edges and declared branches.

The graph is validated when it is built, so an executor never discovers a
dangling edge mid-run.  A branch selects among a declared set of targets;
returning anything outside that set is an error, not a silent dead end.

Resume rule (``PipelineGraph.next_node``):

    no history                  -> entry node
    last entry succeeded        -> successor of that node (None when terminal)
    last entry failed           -> the same node again
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from itemresearch.pipeline.schemas import NodeOutput, ResearchConstraints, RunState
from itemresearch.pipeline.tools import ToolInvoker
from itemresearch.research.fields import FieldConfidenceTracker


@dataclass
class NodeContext:
    """Read-only inputs handed to a node handler."""

    run_id: UUID
    item_id: str
    organization_id: str | None
    research_mode: str
    attempt_number: int
    fields: FieldConfidenceTracker
    context: dict[str, Any]
    constraints: ResearchConstraints
    tools: ToolInvoker
    step_history: list = field(default_factory=list)


NodeHandler = Callable[[NodeContext], NodeOutput | dict]
BranchSelector = Callable[[FieldConfidenceTracker, Mapping[str, Any], ResearchConstraints], str]


@dataclass(frozen=True)
class NodeSpec:
    name: str
    handler: NodeHandler
    tool_name: str | None = None
    timeout_s: float | None = None
    max_attempts: int | None = None
    # Only the node that loads what the user typed may emit user_provided values
    # or mark fields as required
    seeds_user_values: bool = False
    description: str = ""


@dataclass(frozen=True)
class Branch:
    targets: frozenset[str]
    selector: BranchSelector


class PipelineGraph:
    def __init__(
        self,
        version: str,
        nodes: Iterable[NodeSpec],
        entry: str,
        edges: Mapping[str, str] | None = None,
        branches: Mapping[str, Branch] | None = None,
    ) -> None:
        self.version = version
        self.entry = entry
        self._nodes: dict[str, NodeSpec] = {}
        for spec in nodes:
            if spec.name in self._nodes:
                raise ValueError(f"Duplicate node name {spec.name!r}")
            self._nodes[spec.name] = spec
        self._edges = dict(edges or {})
        self._branches = dict(branches or {})
        self._validate()

    def _validate(self) -> None:
        if self.entry not in self._nodes:
            raise ValueError(f"Entry node {self.entry!r} is not defined")

        for source, target in self._edges.items():
            if source not in self._nodes:
                raise ValueError(f"Edge source {source!r} is not defined")
            if target not in self._nodes:
                raise ValueError(f"Edge {source!r} -> {target!r} targets an undefined node")
            if source in self._branches:
                raise ValueError(f"Node {source!r} has both an edge and a branch")

        for source, branch in self._branches.items():
            if source not in self._nodes:
                raise ValueError(f"Branch source {source!r} is not defined")
            if not branch.targets:
                raise ValueError(f"Branch at {source!r} declares no targets")
            unknown = branch.targets - self._nodes.keys()
            if unknown:
                raise ValueError(f"Branch at {source!r} targets undefined nodes {sorted(unknown)}")

        reachable = self._reachable_from(self.entry)
        unreachable = self._nodes.keys() - reachable
        if unreachable:
            raise ValueError(f"Nodes unreachable from {self.entry!r}: {sorted(unreachable)}")

        if not any(name not in self._edges and name not in self._branches for name in self._nodes):
            raise ValueError("Graph has no terminal node")

    def _reachable_from(self, start: str) -> set[str]:
        seen: set[str] = set()
        stack = [start]
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            if name in self._edges:
                stack.append(self._edges[name])
            if name in self._branches:
                stack.extend(self._branches[name].targets)
        return seen

    # ------------------------------------------------------------------

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def node_names(self) -> list[str]:
        return list(self._nodes)

    def node(self, name: str) -> NodeSpec:
        try:
            return self._nodes[name]
        except KeyError:
            raise KeyError(f"Unknown node {name!r} in graph {self.version}") from None

    def successor(
        self,
        after: str,
        fields: FieldConfidenceTracker,
        context: Mapping[str, Any],
        constraints: ResearchConstraints,
    ) -> str | None:
        """Return the node following a successful *after*, or None when terminal."""
        self.node(after)
        if after in self._edges:
            return self._edges[after]
        branch = self._branches.get(after)
        if branch is None:
            return None
        target = branch.selector(fields, context, constraints)
        if target not in branch.targets:
            raise ValueError(f"Branch at {after!r} selected undeclared target {target!r}")
        return target

    def next_node(self, state: RunState, fields: FieldConfidenceTracker) -> str | None:
        last = state.last_entry
        if last is None:
            return self.entry
        if last.outcome == "failure":
            return last.node
        return self.successor(last.node, fields, state.context_data, state.constraints)
