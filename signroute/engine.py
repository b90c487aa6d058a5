"""Approval engine: advances document workflows through their templates."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .config import EngineConfig
from .constants import EVENTS_TOPIC
from .contracts import (
    ApprovalHistory,
    ApprovalStatus,
    DocumentWorkflow,
    NodeType,
    WorkflowEvent,
    WorkflowSnapshot,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
    utcnow,
)
from .collaborators import DocumentStore, RoleDirectory, StaticRoleDirectory
from .exceptions import (
    AmbiguousStepError,
    DocumentStoreError,
    NoActiveStepError,
    StepAlreadyResolvedError,
    StepNotActiveError,
    TemplateNotFoundError,
    UnauthorizedSignerError,
    WorkflowAlreadyTerminalError,
    WorkflowNotFoundError,
)
from .graph import TemplateGraph
from .history import HistoryRecorder
from .persistence import WorkflowRecord, WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class ApprovalEngine:
    """Applies approve/reject decisions to workflow instances.

    Each transition reads the instance, checks it, builds the successor
    state and commits it in one repository call while holding a per-instance
    lock. The repository's version check covers writers in other processes.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        document_store: Optional[DocumentStore] = None,
        role_directory: Optional[RoleDirectory] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[EngineConfig] = None,
        recorder: Optional[HistoryRecorder] = None,
    ) -> None:
        self._repository = repository
        self._document_store = document_store
        self._roles = role_directory or StaticRoleDirectory()
        self._transport = transport
        self._config = config or EngineConfig()
        self._recorder = recorder or HistoryRecorder()
        self._locks: Dict[str, asyncio.Lock] = {}
        # templates referenced by instances never change, so caching is safe
        self._templates: Dict[str, WorkflowTemplate] = {}

    # ------------------------------------------------------------------
    # Commands
    async def approve_step(
        self,
        workflow_id: str,
        user_id: str,
        evidence_ref: str,
        note: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> WorkflowSnapshot:
        """Approve the active step and activate whatever follows it.

        ``step_id`` is only needed when several steps are active and the
        user's roles do not single one out. When the approval completes the
        workflow the document is marked signed before the commit; if that
        fails, ``DocumentStoreError`` is raised and nothing is stored.
        """
        async with self._lock_for(workflow_id):
            record, template = await self._load(workflow_id)
            workflow = record.workflow
            step, row = self._select_step(record, template, user_id, step_id)
            resolved = self._recorder.resolve(
                row, ApprovalStatus.APPROVED, user_id, note=note, evidence_ref=evidence_ref
            )

            graph = TemplateGraph.from_template(template)
            targets = graph.next_step_ids(step.id, ApprovalStatus.APPROVED)
            if step.node_type != NodeType.PARALLEL:
                targets = targets[:1]
            active, waiting = self._advance(graph, record, step.id, targets)

            now = resolved.acted_at
            if active or waiting:
                updated = workflow.model_copy(
                    update={
                        "active_step_ids": tuple(active),
                        "waiting_step_ids": tuple(waiting),
                        "status": WorkflowStatus.IN_PROGRESS,
                        "version": workflow.version + 1,
                    }
                )
            else:
                updated = workflow.model_copy(
                    update={
                        "active_step_ids": (),
                        "waiting_step_ids": (),
                        "status": WorkflowStatus.COMPLETED,
                        "completed_at": now,
                        "version": workflow.version + 1,
                    }
                )

            if updated.status == WorkflowStatus.COMPLETED:
                await self._mark_document_signed(updated)
            await self._repository.commit_transition(updated, [resolved], workflow.version)
            logger.info(
                f"Workflow {workflow_id}: step {step.id} (level {step.level}) "
                f"approved by user {user_id}; status {updated.status.value}"
            )
            self._release_if_terminal(updated)

        await self._publish("step.approved", updated, step.id, user_id)
        if updated.status == WorkflowStatus.COMPLETED:
            await self._publish("workflow.completed", updated, step.id, user_id)

        return WorkflowSnapshot.build(updated, template, _merge(record.history, resolved))

    async def reject_step(
        self,
        workflow_id: str,
        user_id: str,
        reason: str,
        step_id: Optional[str] = None,
    ) -> WorkflowSnapshot:
        """Reject the active step.

        Under the default ``terminal`` policy the workflow becomes
        ``rejected`` for good. With ``follow_rejected_edges`` a step that has
        ``rejected`` connections hands over to their targets instead.
        """
        async with self._lock_for(workflow_id):
            record, template = await self._load(workflow_id)
            workflow = record.workflow
            step, row = self._select_step(record, template, user_id, step_id)
            resolved = self._recorder.resolve(
                row, ApprovalStatus.REJECTED, user_id, note=reason
            )

            graph = TemplateGraph.from_template(template)
            active: List[str] = []
            waiting: List[str] = []
            if self._config.rejection_policy == "follow_rejected_edges":
                targets = graph.next_step_ids(step.id, ApprovalStatus.REJECTED)
                if step.node_type != NodeType.PARALLEL:
                    targets = targets[:1]
                if targets:
                    active, waiting = self._advance(graph, record, step.id, targets)

            if active or waiting:
                updated = workflow.model_copy(
                    update={
                        "active_step_ids": tuple(active),
                        "waiting_step_ids": tuple(waiting),
                        "status": WorkflowStatus.IN_PROGRESS,
                        "version": workflow.version + 1,
                    }
                )
            else:
                updated = workflow.model_copy(
                    update={
                        "active_step_ids": (),
                        "waiting_step_ids": (),
                        "status": WorkflowStatus.REJECTED,
                        "completed_at": resolved.acted_at,
                        "version": workflow.version + 1,
                    }
                )

            await self._repository.commit_transition(updated, [resolved], workflow.version)
            logger.info(
                f"Workflow {workflow_id}: step {step.id} (level {step.level}) "
                f"rejected by user {user_id}; status {updated.status.value}"
            )
            self._release_if_terminal(updated)

        await self._publish("step.rejected", updated, step.id, user_id, {"reason": reason})
        if updated.status == WorkflowStatus.REJECTED:
            await self._publish("workflow.rejected", updated, step.id, user_id)

        return WorkflowSnapshot.build(updated, template, _merge(record.history, resolved))

    # ------------------------------------------------------------------
    # Queries
    async def get_status(self, document_id: str) -> WorkflowSnapshot:
        """Current workflow and history for a document."""
        record = await self._repository.get_workflow_for_document(document_id)
        if record is None:
            raise WorkflowNotFoundError(document_id, kind="document")
        template = await self._template(record.workflow.template_id)
        return WorkflowSnapshot.build(record.workflow, template, record.history)

    async def get_workflow(self, workflow_id: str) -> WorkflowSnapshot:
        record, template = await self._load(workflow_id, allow_terminal=True)
        return WorkflowSnapshot.build(record.workflow, template, record.history)

    async def list_pending_for_user(self, user_id: str) -> List[WorkflowSnapshot]:
        """Open workflows with an active, unsigned step the user may sign."""
        pending: List[WorkflowSnapshot] = []
        for record in await self._repository.list_workflows(active_only=True):
            template = await self._template(record.workflow.template_id)
            for active_id in record.workflow.active_step_ids:
                step = template.get_step(active_id)
                row = record.row_for(active_id)
                if step is None or row is None or row.is_resolved:
                    continue
                if self._holds_role(user_id, step):
                    pending.append(
                        WorkflowSnapshot.build(record.workflow, template, record.history)
                    )
                    break
        return pending

    # ------------------------------------------------------------------
    # Internals
    def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        return self._locks.setdefault(workflow_id, asyncio.Lock())

    def _release_if_terminal(self, workflow: DocumentWorkflow) -> None:
        if workflow.status.is_terminal:
            self._locks.pop(workflow.id, None)

    async def _template(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            template = await self._repository.get_template(template_id)
            if template is None:
                raise TemplateNotFoundError(template_id)
            self._templates[template_id] = template
        return template

    async def _load(
        self, workflow_id: str, allow_terminal: bool = False
    ) -> Tuple[WorkflowRecord, WorkflowTemplate]:
        record = await self._repository.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        workflow = record.workflow
        if workflow.status.is_terminal and not allow_terminal:
            logger.warning(
                f"Rejected transition on workflow {workflow_id}: already {workflow.status.value}"
            )
            raise WorkflowAlreadyTerminalError(workflow_id, workflow.status.value)
        template = await self._template(workflow.template_id)
        return record, template

    def _holds_role(self, user_id: str, step: WorkflowStep) -> bool:
        # a step's role may also name one specific signer
        return step.role == user_id or step.role in self._roles.roles_for(user_id)

    def _select_step(
        self,
        record: WorkflowRecord,
        template: WorkflowTemplate,
        user_id: str,
        step_id: Optional[str],
    ) -> Tuple[WorkflowStep, ApprovalHistory]:
        workflow = record.workflow
        active = list(workflow.active_step_ids)
        if not active:
            logger.error(f"Workflow {workflow.id} is {workflow.status.value} with no active step")
            raise NoActiveStepError(workflow.id)

        if step_id is not None:
            if step_id not in active:
                row = record.row_for(step_id)
                if row is not None and row.is_resolved:
                    raise StepAlreadyResolvedError(workflow.id, step_id, row.status.value)
                raise StepNotActiveError(workflow.id, step_id)
            chosen = step_id
        elif len(active) == 1:
            chosen = active[0]
        else:
            mine = []
            for sid in active:
                candidate = template.get_step(sid)
                if candidate is not None and self._holds_role(user_id, candidate):
                    mine.append(sid)
            if len(mine) != 1:
                raise AmbiguousStepError(workflow.id, mine or active)
            chosen = mine[0]

        step = template.get_step(chosen)
        row = record.row_for(chosen)
        if step is None or row is None:
            logger.error(f"Workflow {workflow.id}: active step {chosen} missing from template or history")
            raise NoActiveStepError(workflow.id)
        if row.is_resolved:
            raise StepAlreadyResolvedError(workflow.id, chosen, row.status.value)
        if self._config.enforce_roles and not self._holds_role(user_id, step):
            logger.warning(f"User {user_id} may not sign step {step.id} of workflow {workflow.id}")
            raise UnauthorizedSignerError(user_id, step.id, step.role)
        return step, row

    def _advance(
        self,
        graph: TemplateGraph,
        record: WorkflowRecord,
        resolved_step_id: str,
        targets: Sequence[str],
    ) -> Tuple[List[str], List[str]]:
        """Compute the next active and waiting step ids.

        Steps already resolved or already active are not re-entered. A
        candidate that a still-active step (or another candidate) can reach
        is a join and waits until those branches have moved past it.
        """
        active = [sid for sid in record.workflow.active_step_ids if sid != resolved_step_id]
        candidates: List[str] = []
        for sid in list(record.workflow.waiting_step_ids) + list(targets):
            if sid in candidates or sid in active:
                continue
            row = record.row_for(sid)
            if row is not None and row.is_resolved:
                continue
            candidates.append(sid)

        waiting: List[str] = []
        for sid in candidates:
            upstream = [other for other in active + candidates if other != sid]
            if any(graph.can_reach(other, sid) for other in upstream):
                waiting.append(sid)
        active.extend(sid for sid in candidates if sid not in waiting)
        return active, waiting

    async def _mark_document_signed(self, workflow: DocumentWorkflow) -> None:
        # runs before the commit so a store outage leaves the workflow untouched
        if self._document_store is None:
            return
        try:
            await self._document_store.mark_signed(
                workflow.document_id, workflow.completed_at or utcnow()
            )
        except Exception as e:
            logger.error(
                f"Failed to mark document {workflow.document_id} signed for workflow "
                f"{workflow.id}: {e}. The transition was not committed."
            )
            raise DocumentStoreError(workflow.document_id, str(e)) from e

    async def _publish(
        self,
        event_type: str,
        workflow: DocumentWorkflow,
        step_id: Optional[str],
        actor_id: Optional[str],
        payload: Optional[dict] = None,
    ) -> None:
        if self._transport is None:
            return
        event = WorkflowEvent(
            event_type=event_type,
            workflow_id=workflow.id,
            document_id=workflow.document_id,
            step_id=step_id,
            actor_id=actor_id,
            status=workflow.status,
            payload=payload or {},
        )
        try:
            await self._transport.publish(EVENTS_TOPIC, event)
        except Exception as e:
            # notifications are best effort; the transition is already committed
            logger.error(f"Failed to publish {event_type} for workflow {workflow.id}: {e}")


def _merge(history: Sequence[ApprovalHistory], resolved: ApprovalHistory) -> List[ApprovalHistory]:
    return [resolved if row.step_id == resolved.step_id else row for row in history]
