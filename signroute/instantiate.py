"""Creates workflow instances from validated templates."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import EVENTS_TOPIC
from .contracts import DocumentWorkflow, WorkflowEvent, WorkflowStatus
from .exceptions import (
    TemplateInactiveError,
    TemplateInvalidError,
    TemplateNotFoundError,
)
from .graph import TemplateGraph
from .history import HistoryRecorder
from .persistence import WorkflowRepository
from .transports import BaseTransport
from .validation import GraphValidator

logger = logging.getLogger(__name__)


class WorkflowInstantiator:
    """Service responsible for starting new document workflows."""

    def __init__(
        self,
        repository: WorkflowRepository,
        validator: Optional[GraphValidator] = None,
        transport: Optional[BaseTransport] = None,
        recorder: Optional[HistoryRecorder] = None,
    ) -> None:
        self._repository = repository
        self._validator = validator or GraphValidator()
        self._transport = transport
        self._recorder = recorder or HistoryRecorder()

    async def create(
        self,
        document_id: str,
        template_id: str,
        initiator_id: Optional[str] = None,
    ) -> DocumentWorkflow:
        """Start routing ``document_id`` through template ``template_id``.

        The template is validated again here rather than trusting an earlier
        check, since it may have been edited since.

        Raises:
            TemplateNotFoundError: No template with this id.
            TemplateInactiveError: The template was deactivated.
            TemplateInvalidError: The template graph is malformed.
            WorkflowExistsError: The document is already being routed.
        """
        template = await self._repository.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        if not template.is_active:
            raise TemplateInactiveError(template_id)

        report = self._validator.validate_template(template)
        if not report.is_valid:
            logger.warning(
                f"Refusing to start workflow for document {document_id}: "
                f"template {template_id} has {len(report.violations)} violation(s)"
            )
            raise TemplateInvalidError(template_id, report.violations)

        graph = TemplateGraph.from_template(template)
        workflow = DocumentWorkflow(
            document_id=document_id,
            template_id=template.id,
            active_step_ids=tuple(graph.start_step_ids()),
            status=WorkflowStatus.PENDING,
            initiator_id=initiator_id,
        )
        history = self._recorder.initial_rows(workflow.id, template.ordered_steps())
        await self._repository.create_workflow(workflow, history)
        logger.info(
            f"Created workflow {workflow.id} for document {document_id} "
            f"from template {template.id} v{template.version}"
        )

        if self._transport is not None:
            event = WorkflowEvent(
                event_type="workflow.created",
                workflow_id=workflow.id,
                document_id=document_id,
                actor_id=initiator_id,
                status=workflow.status,
                payload={"template_id": template.id},
            )
            try:
                await self._transport.publish(EVENTS_TOPIC, event)
            except Exception as e:
                logger.error(f"Failed to publish workflow.created for workflow {workflow.id}: {e}")
        return workflow
