"""Credential model for the workflow automation engine."""

from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import CredentialScope
from db.base import BaseModel


class Credential(BaseModel):
    """Encrypted secret owned by a user or an organization.

    Attributes:
        key: Symbolic name referenced from workflows, e.g. ``openai``
        encrypted_value: Fernet token
        scope: ``user`` or ``organization``
        owner_id: User id or organization id, depending on scope
        platform: Free-form tag (``openai``, ``twitter``, ...)
    """

    __tablename__ = "credentials"
    __table_args__ = (
        UniqueConstraint("scope", "owner_id", "key", name="uq_credential_owner_key"),
    )

    key: Mapped[str] = mapped_column(nullable=False, index=True)
    encrypted_value: Mapped[str] = mapped_column(nullable=False)
    scope: Mapped[str] = mapped_column(default=CredentialScope.USER.value, index=True)
    owner_id: Mapped[str] = mapped_column(nullable=False, index=True)
    platform: Mapped[Optional[str]] = mapped_column(nullable=True)
