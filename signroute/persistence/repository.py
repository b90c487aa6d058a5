"""Repository abstraction for templates and workflow state."""

from __future__ import annotations

from typing import Protocol, Sequence

from ..contracts import ApprovalHistory, DocumentWorkflow, WorkflowTemplate
from .models import WorkflowRecord


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every write is atomic: either all rows of a call are stored or none are.
    """

    async def save_templates(self, templates: Sequence[WorkflowTemplate]) -> None:
        """Insert or replace templates in one transaction."""

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        """Retrieve a template by id."""

    async def list_templates(self) -> list[WorkflowTemplate]:
        """Return all templates, newest first."""

    async def template_in_use(self, template_id: str) -> bool:
        """Whether any workflow instance references the template."""

    async def create_workflow(
        self, workflow: DocumentWorkflow, history: Sequence[ApprovalHistory]
    ) -> None:
        """Persist a new instance with its pending history rows.

        Raises ``WorkflowExistsError`` if the document already has a
        non-terminal instance.
        """

    async def commit_transition(
        self,
        workflow: DocumentWorkflow,
        history: Sequence[ApprovalHistory],
        expected_version: int,
    ) -> None:
        """Store an updated instance and the history rows it changed.

        Raises ``ConcurrentModificationError`` when the stored version is
        not ``expected_version``.
        """

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Retrieve the workflow instance by id."""

    async def get_workflow_for_document(self, document_id: str) -> WorkflowRecord | None:
        """Retrieve the most recent instance for a document."""

    async def list_workflows(self, active_only: bool = False) -> list[WorkflowRecord]:
        """Return persisted instances ordered by start time."""
