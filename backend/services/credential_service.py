"""Credential service — encrypted secrets and per-execution resolution.

Secrets are stored per owner (a user or an organization) under a
symbolic key such as ``openai`` and encrypted with the credential vault.
A workflow references them as ``{{credential.openai}}``; they are
decrypted only while resolving an execution attempt and never logged.

Resolution order for one key: the acting user's own credential, then
the organization's. A key the workflow needs but neither owner has fails
the attempt before any step runs.
"""

import json
import logging
from typing import Any, Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import CredentialScope
from core.exceptions import CredentialNotFoundError
from core.security import CredentialVault
from db.models.credential import Credential
from services.base import BaseService

logger = logging.getLogger(__name__)


def _encode(value: Any) -> str:
    return json.dumps(value)


def _decode(raw: str) -> Any:
    return json.loads(raw)


class CredentialService(BaseService[Credential]):
    """Store and manage credentials for one session."""

    def __init__(self, db: AsyncSession, vault: CredentialVault):
        super().__init__(Credential, db)
        self.vault = vault

    async def _find(self, key: str, scope: str, owner_id: str) -> Optional[Credential]:
        result = await self.db.execute(
            select(Credential).where(
                Credential.key == key,
                Credential.scope == scope,
                Credential.owner_id == owner_id,
            )
        )
        return result.scalar_one_or_none()

    async def store(
        self,
        key: str,
        value: Any,
        owner_id: str,
        scope: CredentialScope = CredentialScope.USER,
        platform: Optional[str] = None,
    ) -> Credential:
        """Create or replace a credential. ``value`` may be a string or a JSON object."""
        scope = CredentialScope(scope).value
        encrypted = self.vault.encrypt(_encode(value))
        existing = await self._find(key, scope, owner_id)
        if existing is not None:
            existing.encrypted_value = encrypted
            existing.platform = platform or existing.platform
            await self.db.flush()
            logger.info(f"Credential '{key}' updated for {scope} {owner_id}")
            return existing

        logger.info(f"Credential '{key}' stored for {scope} {owner_id}")
        return await self.create({
            "key": key,
            "encrypted_value": encrypted,
            "scope": scope,
            "owner_id": owner_id,
            "platform": platform or key,
        })

    async def delete_key(
        self, key: str, owner_id: str, scope: CredentialScope = CredentialScope.USER
    ) -> bool:
        existing = await self._find(key, CredentialScope(scope).value, owner_id)
        if existing is None:
            return False
        await self.db.delete(existing)
        await self.db.flush()
        return True

    async def list_keys(
        self, owner_id: str, scope: CredentialScope = CredentialScope.USER
    ) -> list[dict]:
        """Stored keys for an owner. Values are never returned."""
        result = await self.db.execute(
            select(Credential)
            .where(Credential.owner_id == owner_id, Credential.scope == CredentialScope(scope).value)
            .order_by(Credential.key)
        )
        return [
            {"key": c.key, "platform": c.platform, "scope": c.scope, "updated_at": c.updated_at}
            for c in result.scalars().all()
        ]


class CredentialResolver:
    """Resolves the credential map for one execution attempt."""

    def __init__(self, session_factory: async_sessionmaker, vault: CredentialVault):
        self._session_factory = session_factory
        self.vault = vault

    async def resolve(
        self,
        user_id: Optional[str],
        organization_id: Optional[str],
        keys: Iterable[str],
    ) -> dict[str, Any]:
        """Decrypt every requested key; user scope wins over organization scope.

        Raises:
            CredentialNotFoundError: if any key has no usable credential
        """
        wanted = sorted(set(keys))
        if not wanted:
            return {}

        owners = []
        if user_id:
            owners.append((CredentialScope.USER.value, user_id))
        if organization_id:
            owners.append((CredentialScope.ORGANIZATION.value, organization_id))
        if not owners:
            raise CredentialNotFoundError(wanted)

        async with self._session_factory() as session:
            result = await session.execute(
                select(Credential).where(
                    Credential.key.in_(wanted),
                    or_(*[
                        (Credential.scope == scope) & (Credential.owner_id == owner)
                        for scope, owner in owners
                    ]),
                )
            )
            rows = result.scalars().all()

        by_scope: dict[str, dict[str, Credential]] = {}
        for row in rows:
            by_scope.setdefault(row.scope, {})[row.key] = row

        resolved: dict[str, Any] = {}
        for key in wanted:
            for scope, _ in owners:
                row = by_scope.get(scope, {}).get(key)
                if row is None:
                    continue
                try:
                    resolved[key] = _decode(self.vault.decrypt(row.encrypted_value))
                except ValueError:
                    logger.error(f"Credential '{key}' ({scope}) could not be decrypted")
                    continue
                break

        missing = [key for key in wanted if key not in resolved]
        if missing:
            raise CredentialNotFoundError(missing)
        return resolved
