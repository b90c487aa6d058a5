"""Approval history rows: created pending, resolved exactly once."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from .constants import NO_SIGNER
from .contracts import ApprovalHistory, ApprovalStatus, WorkflowStep, utcnow
from .exceptions import StepAlreadyResolvedError


class HistoryRecorder:
    """Builds and resolves :class:`ApprovalHistory` rows.

    Rows are frozen; resolving returns a new row and leaves the old one
    untouched.
    """

    def initial_rows(
        self, workflow_id: str, steps: Iterable[WorkflowStep]
    ) -> List[ApprovalHistory]:
        return [
            ApprovalHistory(workflow_id=workflow_id, step_id=step.id, actor_id=NO_SIGNER)
            for step in steps
        ]

    def resolve(
        self,
        row: ApprovalHistory,
        status: ApprovalStatus,
        actor_id: str,
        note: Optional[str] = None,
        evidence_ref: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> ApprovalHistory:
        if status == ApprovalStatus.PENDING:
            raise ValueError("a history row can only be resolved to approved or rejected")
        if row.is_resolved:
            raise StepAlreadyResolvedError(row.workflow_id, row.step_id, row.status.value)
        return row.model_copy(
            update={
                "status": status,
                "actor_id": actor_id,
                "acted_at": at or utcnow(),
                "note": note,
                "evidence_ref": evidence_ref,
            }
        )
