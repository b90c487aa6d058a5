"""Structural validation of workflow template graphs."""

from __future__ import annotations

import logging
from collections import Counter
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import TemplateMode, WorkflowConnection, WorkflowStep, WorkflowTemplate
from .graph import TemplateGraph

logger = logging.getLogger(__name__)

Strictness = Literal["strict", "relaxed"]


class ValidationReport(BaseModel):
    """Outcome of validating one template graph."""

    is_valid: bool
    violations: List[str] = Field(default_factory=list)


class GraphValidator:
    """Reports every structural problem of a template graph.

    Malformed graphs are the expected input here, so nothing is raised;
    violations come back in check order so reports are stable across runs.
    """

    def __init__(self, strictness: Strictness = "strict") -> None:
        self.strictness = strictness

    def validate_template(
        self, template: WorkflowTemplate, strictness: Optional[Strictness] = None
    ) -> ValidationReport:
        return self.validate(
            template.steps, template.connections, template.mode, strictness
        )

    def validate(
        self,
        steps: Sequence[WorkflowStep],
        connections: Sequence[WorkflowConnection],
        mode: TemplateMode = TemplateMode.GRAPH,
        strictness: Optional[Strictness] = None,
    ) -> ValidationReport:
        strictness = strictness or self.strictness
        graph = TemplateGraph(steps, connections, mode)
        violations: List[str] = []

        # 1. non-empty
        if not graph.steps:
            violations.append("Workflow must have at least one step.")

        # 2. start / end nodes
        if strictness == "strict":
            if len(graph.starts) != 1:
                violations.append(
                    f"Workflow must have exactly one start step, found {len(graph.starts)}."
                )
        else:
            if not graph.starts:
                violations.append("Workflow must have at least one start step.")
            if not graph.ends:
                violations.append("Workflow must have at least one end step.")

        # 3. outgoing edges
        for pos, step in enumerate(graph.steps):
            if pos not in graph.ends and not graph.outgoing[pos]:
                violations.append(
                    f"Step {step.id} (level {step.level}, {step.role}) has no outgoing connection."
                )

        # 4. incoming edges
        for pos, step in enumerate(graph.steps):
            if pos not in graph.starts and not graph.incoming[pos]:
                violations.append(
                    f"Step {step.id} (level {step.level}, {step.role}) has no incoming connection."
                )

        # 5. cycles
        for cycle in graph.find_cycles():
            violations.append("Cycle detected: " + " -> ".join(cycle) + ".")

        # 6. sequential levels
        if mode == TemplateMode.SEQUENTIAL:
            counts = Counter(step.level for step in graph.steps)
            for level in sorted(level for level, n in counts.items() if n > 1):
                violations.append(
                    f"Level {level} is used by {counts[level]} steps in a sequential template."
                )

        # 7. dangling connections
        for conn in graph.dangling:
            violations.append(
                f"Connection {conn.id} references unknown steps "
                f"{conn.source_step_id} -> {conn.target_step_id}."
            )

        if violations:
            logger.debug(f"Template graph has {len(violations)} violation(s)")
        return ValidationReport(is_valid=not violations, violations=violations)
