"""Index-based view of a template's step graph.

Steps live in an arena (a list) and edges refer to them by position, so
traversals only need integer sets. Sequential templates without explicit
connections get implicit ``auto`` edges from each level to the next one here,
which lets the validator and the engine share a single code path.
"""

from __future__ import annotations

from collections import deque
from itertools import groupby
from typing import Dict, List, NamedTuple, Optional, Sequence, Set

from .contracts import (
    ApprovalStatus,
    ConnectionCondition,
    NodeType,
    TemplateMode,
    WorkflowConnection,
    WorkflowStep,
    WorkflowTemplate,
)


class Edge(NamedTuple):
    source: int
    target: int
    condition: ConnectionCondition
    priority: int
    order: int
    connection_id: Optional[str] = None


class TemplateGraph:
    """Adjacency index over one template's steps and connections."""

    def __init__(
        self,
        steps: Sequence[WorkflowStep],
        connections: Sequence[WorkflowConnection],
        mode: TemplateMode = TemplateMode.GRAPH,
    ) -> None:
        self.steps: List[WorkflowStep] = list(steps)
        self.mode = mode
        self.index: Dict[str, int] = {}
        for pos, step in enumerate(self.steps):
            # first declaration wins for duplicate ids
            self.index.setdefault(step.id, pos)

        self.edges: List[Edge] = []
        self.dangling: List[WorkflowConnection] = []
        self.implicit = mode == TemplateMode.SEQUENTIAL and not connections
        if self.implicit:
            self._derive_sequential_edges()
        else:
            for order, conn in enumerate(connections):
                src = self.index.get(conn.source_step_id)
                dst = self.index.get(conn.target_step_id)
                if src is None or dst is None:
                    self.dangling.append(conn)
                    continue
                self.edges.append(
                    Edge(src, dst, conn.condition, conn.priority, order, conn.id)
                )

        self.outgoing: List[List[int]] = [[] for _ in self.steps]
        self.incoming: List[List[int]] = [[] for _ in self.steps]
        for pos, edge in enumerate(self.edges):
            self.outgoing[edge.source].append(pos)
            self.incoming[edge.target].append(pos)

        self.starts: Set[int] = self._nodes_of_type(NodeType.START)
        self.ends: Set[int] = self._nodes_of_type(NodeType.END)
        if mode == TemplateMode.SEQUENTIAL and self.steps:
            levels = sorted({s.level for s in self.steps})
            if not self.starts:
                self.starts = {
                    i for i, s in enumerate(self.steps) if s.level == levels[0]
                }
            if not self.ends:
                self.ends = {
                    i for i, s in enumerate(self.steps) if s.level == levels[-1]
                }

    @classmethod
    def from_template(cls, template: WorkflowTemplate) -> "TemplateGraph":
        return cls(template.steps, template.connections, template.mode)

    # ------------------------------------------------------------------
    def _nodes_of_type(self, node_type: NodeType) -> Set[int]:
        return {i for i, s in enumerate(self.steps) if s.node_type == node_type}

    def _derive_sequential_edges(self) -> None:
        by_level = sorted(range(len(self.steps)), key=lambda i: self.steps[i].level)
        groups = [
            list(members)
            for _, members in groupby(by_level, key=lambda i: self.steps[i].level)
        ]
        order = 0
        for current, following in zip(groups, groups[1:]):
            # level n hands over to level n + 1 only; a gap leaves both sides unlinked
            if self.steps[following[0]].level != self.steps[current[0]].level + 1:
                continue
            for src in current:
                for dst in following:
                    self.edges.append(
                        Edge(src, dst, ConnectionCondition.AUTO, 0, order)
                    )
                    order += 1

    # ------------------------------------------------------------------
    def start_step_ids(self) -> List[str]:
        """Ids of the steps a new instance starts with, in declaration order."""
        return [self.steps[i].id for i in sorted(self.starts)]

    def next_step_ids(self, step_id: str, outcome: ApprovalStatus) -> List[str]:
        """Targets of edges eligible after ``outcome``, highest priority first.

        Ties on priority keep connection declaration order.
        """
        pos = self.index[step_id]
        eligible = [
            self.edges[e]
            for e in self.outgoing[pos]
            if _fires_on(self.edges[e].condition, outcome)
        ]
        eligible.sort(key=lambda edge: (edge.priority, edge.order))
        targets: List[str] = []
        for edge in eligible:
            target_id = self.steps[edge.target].id
            if target_id not in targets:
                targets.append(target_id)
        return targets

    def can_reach(self, source_id: str, target_id: str) -> bool:
        """Whether ``target_id`` is reachable from ``source_id`` on approval edges."""
        src = self.index[source_id]
        dst = self.index[target_id]
        seen = {src}
        queue = deque([src])
        while queue:
            node = queue.popleft()
            for e in self.outgoing[node]:
                edge = self.edges[e]
                if not _fires_on(edge.condition, ApprovalStatus.APPROVED):
                    continue
                if edge.target == dst:
                    return True
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return False

    def find_cycles(self) -> List[List[str]]:
        """Return one step-id path per back edge found by depth-first search.

        Each path starts and ends with the same step id.
        """
        visited: Set[int] = set()
        on_stack: Set[int] = set()
        cycles: List[List[str]] = []

        for root in range(len(self.steps)):
            if root in visited:
                continue
            path: List[int] = [root]
            frames = [iter(self.outgoing[root])]
            visited.add(root)
            on_stack.add(root)
            while frames:
                edge_pos = next(frames[-1], None)
                if edge_pos is None:
                    frames.pop()
                    on_stack.discard(path.pop())
                    continue
                target = self.edges[edge_pos].target
                if target in on_stack:
                    loop = path[path.index(target):] + [target]
                    cycles.append([self.steps[i].id for i in loop])
                elif target not in visited:
                    visited.add(target)
                    on_stack.add(target)
                    path.append(target)
                    frames.append(iter(self.outgoing[target]))
        return cycles


def _fires_on(condition: ConnectionCondition, outcome: ApprovalStatus) -> bool:
    if outcome == ApprovalStatus.APPROVED:
        return condition in (ConnectionCondition.AUTO, ConnectionCondition.APPROVED)
    if outcome == ApprovalStatus.REJECTED:
        return condition == ConnectionCondition.REJECTED
    return False
