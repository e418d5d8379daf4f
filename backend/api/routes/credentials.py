"""Credential endpoints — store, list and delete encrypted secrets.

Values go in, never out: listing returns keys and platforms only.
Workflows read them at execution time as ``{{credential.<key>}}``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import logging

from api.schemas.common import CredentialStoreRequest
from app.dependencies import get_credential_service, get_organization, require_acting_user
from core.constants import CredentialScope
from core.exceptions import NotFoundError, ValidationError
from services.credential_service import CredentialService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["credentials"])


def _owner(scope: str, user_id: str, organization_id: Optional[str]) -> tuple[CredentialScope, str]:
    try:
        scope = CredentialScope(scope)
    except ValueError:
        raise ValidationError(f"Unknown credential scope '{scope}'")
    if scope == CredentialScope.ORGANIZATION:
        if not organization_id:
            raise ValidationError("X-Organization-ID header is required for organization credentials")
        return scope, organization_id
    return scope, user_id


@router.get("")
async def list_credentials(
    scope: str = Query(default="user"),
    user_id: str = Depends(require_acting_user),
    organization_id: Optional[str] = Depends(get_organization),
    svc: CredentialService = Depends(get_credential_service),
) -> dict:
    scope, owner_id = _owner(scope, user_id, organization_id)
    return {"credentials": await svc.list_keys(owner_id, scope)}


@router.put("/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def store_credential(
    key: str,
    request: CredentialStoreRequest,
    user_id: str = Depends(require_acting_user),
    organization_id: Optional[str] = Depends(get_organization),
    svc: CredentialService = Depends(get_credential_service),
) -> None:
    scope, owner_id = _owner(request.scope, user_id, organization_id)
    await svc.store(key, request.value, owner_id, scope=scope, platform=request.platform)


@router.delete("/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credential(
    key: str,
    scope: str = Query(default="user"),
    user_id: str = Depends(require_acting_user),
    organization_id: Optional[str] = Depends(get_organization),
    svc: CredentialService = Depends(get_credential_service),
) -> None:
    scope, owner_id = _owner(scope, user_id, organization_id)
    if not await svc.delete_key(key, owner_id, scope):
        raise NotFoundError(f"Credential '{key}' not found")
