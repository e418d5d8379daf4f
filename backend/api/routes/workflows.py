"""Workflow endpoints — import, validate, export, list, enable/disable, execute."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.schemas.common import PaginationParams
from api.schemas.workflow import (
    EnqueueResponse,
    ExecuteRequest,
    ImportResponse,
    ValidateResponse,
    WorkflowListResponse,
    WorkflowSummary,
)
from app.container import Runtime
from app.dependencies import (
    get_acting_user,
    get_db,
    get_dispatcher,
    get_organization,
    get_runtime,
    get_workflow_service,
    require_acting_user,
)
from core.exceptions import ValidationError
from services.workflow_service import WorkflowService
from triggers.dispatcher import TriggerDispatcher
from workflow.definition import WorkflowDocument
from workflow.validation import credential_keys_for

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


def _summary(wf) -> WorkflowSummary:
    return WorkflowSummary(
        id=wf.id,
        name=wf.name,
        description=wf.description or "",
        trigger_type=wf.trigger_type,
        is_enabled=wf.is_enabled,
        user_id=wf.user_id,
        organization_id=wf.organization_id,
    )


@router.get("", response_model=WorkflowListResponse)
async def list_workflows(
    pagination: PaginationParams = Depends(),
    user_id: Optional[str] = Depends(get_acting_user),
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowListResponse:
    """List stored workflows, newest first (only the acting user's when X-User-ID is sent)."""
    workflows, total = await svc.list(
        offset=(pagination.page - 1) * pagination.per_page,
        limit=pagination.per_page,
        filters={"user_id": user_id} if user_id else None,
    )
    return WorkflowListResponse(
        workflows=[_summary(wf) for wf in workflows],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/validate", response_model=ValidateResponse)
async def validate_workflow(
    document: dict[str, Any] = Body(...),
    runtime: Runtime = Depends(get_runtime),
) -> ValidateResponse:
    """Dry-run validation: report issues and the auto-corrections import would apply."""
    try:
        parsed = WorkflowDocument.parse(document)
    except ValidationError as e:
        return ValidateResponse(valid=False, issues=e.issues)

    report = runtime.validator.validate(parsed)
    return ValidateResponse(
        valid=report.ok,
        issues=report.issues,
        changes=report.changes,
        credentials=sorted(credential_keys_for(parsed, report)),
    )


@router.post("/import", response_model=ImportResponse, status_code=status.HTTP_201_CREATED)
async def import_workflow(
    document: dict[str, Any] = Body(...),
    workflow_id: Optional[str] = Query(default=None, description="Replace this workflow"),
    user_id: str = Depends(require_acting_user),
    organization_id: Optional[str] = Depends(get_organization),
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> ImportResponse:
    """Import (or replace) a workflow document.

    Scheduled triggers (cron, inbound email) are registered right away.
    """
    svc = WorkflowService(db, runtime.validator)
    workflow, changes = await svc.import_document(
        document, user_id, organization_id=organization_id, workflow_id=workflow_id
    )
    await db.commit()
    await runtime.triggers.sync(workflow.id)

    return ImportResponse(
        id=workflow.id,
        name=workflow.name,
        trigger_type=workflow.trigger_type,
        is_enabled=workflow.is_enabled,
        changes=changes,
    )


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> dict:
    """Stored workflow document plus ownership, secrets redacted."""
    definition = await svc.get_definition(workflow_id)
    return {
        "id": definition.id,
        "user_id": definition.user_id,
        "organization_id": definition.organization_id,
        "is_enabled": definition.is_enabled,
        "document": definition.to_document(),
    }


@router.get("/{workflow_id}/export")
async def export_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> dict:
    """Export in the import format. Webhook and bot secrets are redacted."""
    return await svc.export_document(workflow_id)


@router.post("/{workflow_id}/enable", response_model=WorkflowSummary)
async def enable_workflow(
    workflow_id: str,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> WorkflowSummary:
    return await _set_enabled(workflow_id, True, runtime, db)


@router.post("/{workflow_id}/disable", response_model=WorkflowSummary)
async def disable_workflow(
    workflow_id: str,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> WorkflowSummary:
    return await _set_enabled(workflow_id, False, runtime, db)


async def _set_enabled(workflow_id: str, enabled: bool, runtime: Runtime, db: AsyncSession) -> WorkflowSummary:
    workflow = await WorkflowService(db, runtime.validator).set_enabled(workflow_id, enabled)
    await db.commit()
    await runtime.triggers.sync(workflow_id)
    return _summary(workflow)


@router.post("/{workflow_id}/execute", response_model=EnqueueResponse)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest = Body(default=ExecuteRequest()),
    user_id: Optional[str] = Depends(get_acting_user),
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
) -> EnqueueResponse:
    """Enqueue a manual run. Runs as the X-User-ID user, else as the workflow owner."""
    result = await dispatcher.handle_manual(
        workflow_id,
        input=request.input,
        user_id=user_id,
        priority=request.priority,
        delay=request.delay,
    )
    return EnqueueResponse(**result.to_dict())


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: str,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> None:
    svc = WorkflowService(db, runtime.validator)
    await svc.get(workflow_id)
    await svc.delete(workflow_id)
    await db.commit()
    runtime.triggers.deactivate(workflow_id)
    logger.info(f"Deleted workflow {workflow_id}")
