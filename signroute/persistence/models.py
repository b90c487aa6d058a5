"""Data models for persisted workflow state."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from ..contracts import ApprovalHistory, DocumentWorkflow


class WorkflowRecord(BaseModel):
    """A workflow instance together with its approval history."""

    workflow: DocumentWorkflow
    history: List[ApprovalHistory] = Field(default_factory=list)

    def row_for(self, step_id: str) -> Optional[ApprovalHistory]:
        return next((row for row in self.history if row.step_id == step_id), None)
