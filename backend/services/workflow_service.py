"""Workflow service — import, export and lookup of workflow documents."""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import TriggerType
from core.exceptions import NotFoundError
from db.models.workflow import Workflow
from services.base import BaseService
from workflow.definition import REDACTED, WorkflowDefinition, WorkflowDocument
from workflow.validation import WorkflowValidator

logger = logging.getLogger(__name__)


def to_definition(workflow: Workflow) -> WorkflowDefinition:
    """Build the engine's view of a stored workflow."""
    return WorkflowDefinition.model_validate({
        "id": workflow.id,
        "user_id": workflow.user_id,
        "organization_id": workflow.organization_id,
        "is_enabled": workflow.is_enabled,
        "version": workflow.version,
        "name": workflow.name,
        "description": workflow.description or "",
        "trigger": {"type": workflow.trigger_type, "config": workflow.trigger_config or {}},
        "config": workflow.config or {},
        "metadata": workflow.meta or {},
    })


class WorkflowService(BaseService[Workflow]):
    """Service for workflow documents."""

    def __init__(self, db: AsyncSession, validator: WorkflowValidator):
        super().__init__(Workflow, db)
        self.validator = validator

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self.get_by_id(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        return to_definition(await self.get(workflow_id))

    async def list_by_trigger(
        self, trigger_type: TriggerType, enabled_only: bool = True
    ) -> list[Workflow]:
        query = select(Workflow).where(Workflow.trigger_type == TriggerType(trigger_type).value)
        if enabled_only:
            query = query.where(Workflow.is_enabled == True)  # noqa: E712
        result = await self.db.execute(query.order_by(Workflow.created_at))
        return list(result.scalars().all())

    async def set_enabled(self, workflow_id: str, enabled: bool) -> Workflow:
        workflow = await self.get(workflow_id)
        workflow.is_enabled = enabled
        await self.db.flush()
        logger.info(f"Workflow {workflow_id} {'enabled' if enabled else 'disabled'}")
        return workflow

    # ─── Import / export ──────────────────────────────────

    async def import_document(
        self,
        data: Any,
        user_id: str,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> tuple[Workflow, list[str]]:
        """Validate and store a workflow document.

        Deprecated capability paths and parameter names are rewritten to
        their canonical form; the rewrites are returned so the caller can
        show them.

        Returns:
            (workflow, changes)

        Raises:
            ValidationError: if the document has problems auto-correction cannot fix
        """
        document = WorkflowDocument.parse(data)
        report = self.validator.prepare(document)
        normalized = report.document

        existing = await self.get_by_id(workflow_id) if workflow_id else None
        trigger_config = dict(normalized.trigger.config)
        for key, value in list(trigger_config.items()):
            if value != REDACTED:
                continue
            # Re-import of a redacted export keeps the stored secret
            previous = (existing.trigger_config or {}).get(key) if existing else None
            if previous:
                trigger_config[key] = previous
            else:
                trigger_config.pop(key)

        exported = normalized.to_document(redact_secrets=False)
        values = {
            "name": normalized.name,
            "description": normalized.description,
            "version": normalized.version,
            "trigger_type": normalized.trigger.type.value,
            "trigger_config": trigger_config,
            "config": exported["config"],
            "meta": exported["metadata"],
        }

        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            await self.db.flush()
            workflow = existing
        else:
            values["user_id"] = user_id
            values["organization_id"] = organization_id
            if workflow_id:
                values["id"] = workflow_id
            workflow = await self.create(values)

        logger.info(
            f"Imported workflow {workflow.id} ({workflow.name}) with {len(report.changes)} corrections"
        )
        return workflow, report.changes

    async def export_document(self, workflow_id: str, redact_secrets: bool = True) -> dict:
        """Export in the import format; webhook secrets are redacted by default."""
        definition = await self.get_definition(workflow_id)
        return definition.to_document(redact_secrets=redact_secrets)
