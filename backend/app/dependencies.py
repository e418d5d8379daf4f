"""FastAPI dependency injection functions."""

import logging
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.container import Runtime
from core.exceptions import UnauthorizedError
from core.security import CredentialVault
from services.credential_service import CredentialService
from services.workflow_service import WorkflowService
from triggers.dispatcher import TriggerDispatcher
from worker.queue import ExecutionQueue

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_db(runtime: Runtime = Depends(get_runtime)) -> AsyncIterator[AsyncSession]:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with runtime.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise


def get_workflow_service(
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> WorkflowService:
    return WorkflowService(db, runtime.validator)


def get_credential_service(
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> CredentialService:
    return CredentialService(db, runtime.vault)


def get_dispatcher(runtime: Runtime = Depends(get_runtime)) -> TriggerDispatcher:
    return runtime.dispatcher


def get_queue(runtime: Runtime = Depends(get_runtime)) -> ExecutionQueue:
    return runtime.queue


def get_vault(runtime: Runtime = Depends(get_runtime)) -> CredentialVault:
    return runtime.vault


async def get_acting_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> Optional[str]:
    """User the request acts for. Authentication itself happens upstream."""
    return x_user_id or None


async def require_acting_user(
    user_id: Optional[str] = Depends(get_acting_user),
) -> str:
    if not user_id:
        raise UnauthorizedError("X-User-ID header is required")
    return user_id


async def get_organization(
    x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-ID"),
) -> Optional[str]:
    return x_organization_id or None
