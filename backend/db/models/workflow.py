"""Workflow model for the workflow automation engine."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import TriggerType
from db.base import BaseModel


class Workflow(BaseModel):
    """Stored workflow document.

    Attributes:
        id: Unique identifier (UUID string)
        user_id: Owner, the default acting user for triggered executions
        organization_id: Owning organization, used for credential scoping
        name: Workflow name
        description: Workflow description
        version: Document format version
        trigger_type: One of TriggerType
        trigger_config: Trigger configuration (cron expression, webhook secret, ...)
        config: ``{"steps": [...], "returnValue": ..., "outputDisplay": ...}``
        meta: ``{"requiresCredentials": [...], "tags": [...]}``
        is_enabled: Whether triggers for this workflow are active
    """

    __tablename__ = "workflows"

    user_id: Mapped[str] = mapped_column(nullable=False, index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    version: Mapped[str] = mapped_column(default="1.0")
    trigger_type: Mapped[str] = mapped_column(
        default=TriggerType.MANUAL.value, index=True
    )
    trigger_config: Mapped[dict] = mapped_column(JSON, default=dict)
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    is_enabled: Mapped[bool] = mapped_column(default=True, index=True)
