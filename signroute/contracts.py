"""Core data contracts for signroute approval workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import NO_SIGNER


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    START = "start"
    SIGN = "sign"
    APPROVAL = "approval"
    END = "end"
    PARALLEL = "parallel"


class SignatureType(str, Enum):
    DRAFT = "draft"
    FINAL = "final"
    ARCHIVAL = "archival"


class ConnectionCondition(str, Enum):
    AUTO = "auto"
    APPROVED = "approved"
    REJECTED = "rejected"


class TemplateMode(str, Enum):
    """How a template routes between steps.

    ``sequential`` templates may omit connections entirely, in which case
    consecutive levels are linked implicitly.
    """

    SEQUENTIAL = "sequential"
    GRAPH = "graph"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.REJECTED)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowStep(BaseModel):
    """One required signature in a template."""

    id: str = Field(default_factory=_new_id)
    level: int
    role: str
    signature_type: SignatureType = SignatureType.FINAL
    node_type: NodeType = NodeType.SIGN
    description: Optional[str] = None
    # Layout metadata for template editors; never interpreted.
    position_x: float = 0.0
    position_y: float = 0.0

    @field_validator("role")
    @classmethod
    def _ensure_role(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("role must be a non-empty string")
        return v


class WorkflowConnection(BaseModel):
    """Directed edge between two steps of the same template."""

    id: str = Field(default_factory=_new_id)
    source_step_id: str
    target_step_id: str
    condition: ConnectionCondition = ConnectionCondition.AUTO
    priority: int = 0
    label: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _reject_self_loop(self) -> "WorkflowConnection":
        if self.source_step_id == self.target_step_id:
            raise ValueError(
                f"connection cannot target its own source step {self.source_step_id}"
            )
        return self


class WorkflowTemplate(BaseModel):
    """Reusable approval graph for a document type."""

    id: str = Field(default_factory=_new_id)
    name: str
    document_type_id: str
    mode: TemplateMode = TemplateMode.GRAPH
    steps: List[WorkflowStep] = Field(default_factory=list)
    connections: List[WorkflowConnection] = Field(default_factory=list)
    is_active: bool = True
    version: int = 1
    previous_version_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _connections_stay_inside_template(self) -> "WorkflowTemplate":
        step_ids = {step.id for step in self.steps}
        for conn in self.connections:
            missing = [
                sid
                for sid in (conn.source_step_id, conn.target_step_id)
                if sid not in step_ids
            ]
            if missing:
                raise ValueError(
                    f"connection {conn.id} references steps outside template: "
                    + ", ".join(missing)
                )
        return self

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def ordered_steps(self) -> List[WorkflowStep]:
        """Steps sorted by level, keeping declaration order within a level."""
        return sorted(self.steps, key=lambda s: s.level)


class DocumentWorkflow(BaseModel):
    """Live traversal of one template for one document.

    Instances are immutable; the engine produces a new copy per transition
    and bumps ``version`` when the copy is committed.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    document_id: str
    template_id: str
    active_step_ids: Tuple[str, ...] = ()
    waiting_step_ids: Tuple[str, ...] = ()
    status: WorkflowStatus = WorkflowStatus.PENDING
    initiator_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 1


class ApprovalHistory(BaseModel):
    """Outcome of one step for one workflow instance."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_id: str
    actor_id: str = NO_SIGNER
    status: ApprovalStatus = ApprovalStatus.PENDING
    acted_at: Optional[datetime] = None
    note: Optional[str] = None
    evidence_ref: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status != ApprovalStatus.PENDING


class HistoryEntry(BaseModel):
    step_id: str
    level: int
    role: str
    status: ApprovalStatus
    actor_id: str
    at: Optional[datetime] = None
    note: Optional[str] = None
    evidence_ref: Optional[str] = None


class WorkflowSnapshot(BaseModel):
    """Read-only projection of a workflow instance and its history."""

    workflow_id: str
    document_id: str
    template_id: str
    status: WorkflowStatus
    active_step_ids: List[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    history: List[HistoryEntry] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        workflow: DocumentWorkflow,
        template: WorkflowTemplate,
        history: List[ApprovalHistory],
    ) -> "WorkflowSnapshot":
        rows = {row.step_id: row for row in history}
        entries: List[HistoryEntry] = []
        for step in template.ordered_steps():
            row = rows.get(step.id)
            if row is None:
                continue
            entries.append(
                HistoryEntry(
                    step_id=step.id,
                    level=step.level,
                    role=step.role,
                    status=row.status,
                    actor_id=row.actor_id,
                    at=row.acted_at,
                    note=row.note,
                    evidence_ref=row.evidence_ref,
                )
            )
        return cls(
            workflow_id=workflow.id,
            document_id=workflow.document_id,
            template_id=workflow.template_id,
            status=workflow.status,
            active_step_ids=list(workflow.active_step_ids),
            started_at=workflow.started_at,
            completed_at=workflow.completed_at,
            history=entries,
        )


class WorkflowEvent(BaseModel):
    """Notification published after a committed workflow transition."""

    event_id: str = Field(default_factory=_new_id)
    event_type: str
    workflow_id: str
    document_id: str
    step_id: Optional[str] = None
    actor_id: Optional[str] = None
    status: WorkflowStatus
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
