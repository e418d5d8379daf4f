"""Persisted outcome of one execution attempt."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class WorkflowRun(BaseModel):
    """One row per attempt, kept for operator inspection."""

    __tablename__ = "workflow_runs"

    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    attempt: Mapped[int] = mapped_column(default=1)
    trigger_type: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(nullable=False, index=True)
    step_results: Mapped[list] = mapped_column(JSON, default=list)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[int] = mapped_column(default=0)
