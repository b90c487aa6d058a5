"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, List, Sequence

from ..contracts import ApprovalHistory, DocumentWorkflow, WorkflowTemplate
from ..exceptions import ConcurrentModificationError, WorkflowExistsError
from .models import WorkflowRecord
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store templates and workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Each method completes without
    awaiting, so it runs atomically on the event loop.
    """

    def __init__(self) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._workflows: Dict[str, DocumentWorkflow] = {}
        self._history: Dict[str, Dict[str, ApprovalHistory]] = {}

    # ------------------------------------------------------------------
    async def save_templates(self, templates: Sequence[WorkflowTemplate]) -> None:
        for template in templates:
            self._templates[template.id] = template.model_copy(deep=True)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self) -> list[WorkflowTemplate]:
        templates = sorted(
            self._templates.values(), key=lambda t: t.created_at, reverse=True
        )
        return [t.model_copy(deep=True) for t in templates]

    async def template_in_use(self, template_id: str) -> bool:
        return any(wf.template_id == template_id for wf in self._workflows.values())

    # ------------------------------------------------------------------
    async def create_workflow(
        self, workflow: DocumentWorkflow, history: Sequence[ApprovalHistory]
    ) -> None:
        for existing in self._workflows.values():
            if existing.document_id == workflow.document_id and not existing.status.is_terminal:
                raise WorkflowExistsError(workflow.document_id, existing.id)
        self._workflows[workflow.id] = workflow
        self._history[workflow.id] = {row.step_id: row for row in history}

    async def commit_transition(
        self,
        workflow: DocumentWorkflow,
        history: Sequence[ApprovalHistory],
        expected_version: int,
    ) -> None:
        current = self._workflows.get(workflow.id)
        if current is None or current.version != expected_version:
            raise ConcurrentModificationError(workflow.id, expected_version)
        self._workflows[workflow.id] = workflow
        rows = self._history.setdefault(workflow.id, {})
        for row in history:
            rows[row.step_id] = row

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return None
        return self._record(wf)

    async def get_workflow_for_document(self, document_id: str) -> WorkflowRecord | None:
        matches = [wf for wf in self._workflows.values() if wf.document_id == document_id]
        if not matches:
            return None
        return self._record(max(matches, key=lambda wf: wf.started_at))

    async def list_workflows(self, active_only: bool = False) -> list[WorkflowRecord]:
        workflows = sorted(self._workflows.values(), key=lambda wf: wf.started_at)
        if active_only:
            workflows = [wf for wf in workflows if not wf.status.is_terminal]
        return [self._record(wf) for wf in workflows]

    def _record(self, workflow: DocumentWorkflow) -> WorkflowRecord:
        rows: List[ApprovalHistory] = list(self._history.get(workflow.id, {}).values())
        return WorkflowRecord(workflow=workflow, history=rows)
