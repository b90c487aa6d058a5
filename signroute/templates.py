"""Template authoring, versioning and validation."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .contracts import (
    TemplateMode,
    WorkflowConnection,
    WorkflowStep,
    WorkflowTemplate,
    utcnow,
)
from .exceptions import TemplateNotFoundError
from .persistence import WorkflowRepository
from .validation import GraphValidator, ValidationReport

logger = logging.getLogger(__name__)


class TemplateService:
    """Create, revise and validate workflow templates.

    A template referenced by any workflow instance is never edited in
    place; revising it stores a new version and deactivates the old one,
    so running instances keep the graph they started with.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        validator: Optional[GraphValidator] = None,
    ) -> None:
        self._repository = repository
        self._validator = validator or GraphValidator()

    async def create(
        self,
        name: str,
        document_type_id: str,
        steps: Sequence[WorkflowStep],
        connections: Sequence[WorkflowConnection] = (),
        mode: TemplateMode = TemplateMode.GRAPH,
    ) -> WorkflowTemplate:
        template = WorkflowTemplate(
            name=name,
            document_type_id=document_type_id,
            mode=mode,
            steps=list(steps),
            connections=list(connections),
        )
        await self._repository.save_templates([template])
        logger.info(
            f"Created template {template.id} ({name!r}) with {len(template.steps)} steps"
        )
        return template

    async def save(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Store a fully built template (used by imports).

        Saving over a template that workflow instances already reference
        goes through :meth:`revise`, so the stored graph of running
        instances is never replaced. The returned template is the one that
        was actually stored.
        """
        if await self._repository.template_in_use(template.id):
            logger.info(
                f"Template {template.id} is referenced by workflows; storing import as new version"
            )
            return await self.revise(
                template.id,
                template.steps,
                template.connections,
                name=template.name,
                mode=template.mode,
            )
        await self._repository.save_templates([template])
        logger.info(f"Saved template {template.id} ({template.name!r})")
        return template

    async def get(self, template_id: str) -> WorkflowTemplate:
        template = await self._repository.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def list(self) -> List[WorkflowTemplate]:
        return await self._repository.list_templates()

    async def revise(
        self,
        template_id: str,
        steps: Sequence[WorkflowStep],
        connections: Sequence[WorkflowConnection] = (),
        name: Optional[str] = None,
        mode: Optional[TemplateMode] = None,
    ) -> WorkflowTemplate:
        """Replace a template's graph, versioning it when instances use it."""
        current = await self.get(template_id)
        changes = {
            "name": name or current.name,
            "mode": mode or current.mode,
            "steps": list(steps),
            "connections": list(connections),
        }

        if not await self._repository.template_in_use(template_id):
            revised = WorkflowTemplate(
                **{**current.model_dump(), **changes, "updated_at": utcnow()}
            )
            await self._repository.save_templates([revised])
            logger.info(f"Revised template {template_id} in place")
            return revised

        successor = WorkflowTemplate(
            name=changes["name"],
            document_type_id=current.document_type_id,
            mode=changes["mode"],
            steps=changes["steps"],
            connections=changes["connections"],
            is_active=current.is_active,
            version=current.version + 1,
            previous_version_id=current.id,
        )
        retired = current.model_copy(update={"is_active": False, "updated_at": utcnow()})
        await self._repository.save_templates([retired, successor])
        logger.info(
            f"Template {template_id} is in use; stored version {successor.version} "
            f"as {successor.id}"
        )
        return successor

    async def deactivate(self, template_id: str) -> WorkflowTemplate:
        template = await self.get(template_id)
        updated = template.model_copy(update={"is_active": False, "updated_at": utcnow()})
        await self._repository.save_templates([updated])
        logger.info(f"Deactivated template {template_id}")
        return updated

    async def validate(self, template_id: str) -> ValidationReport:
        template = await self.get(template_id)
        return self._validator.validate_template(template)
