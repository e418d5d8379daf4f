"""Queue job bookkeeping for the Celery backend."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import JobStatus
from db.base import BaseModel


class QueueJobRecord(BaseModel):
    """Lifecycle of one queued execution request."""

    __tablename__ = "queue_jobs"

    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    trigger_type: Mapped[str] = mapped_column(nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(default=5)
    status: Mapped[str] = mapped_column(default=JobStatus.WAITING.value, index=True)
    attempts_made: Mapped[int] = mapped_column(default=0)
    max_attempts: Mapped[int] = mapped_column(default=3)
    deferrals: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    result: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
