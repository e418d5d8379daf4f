"""Scheduler run log."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class JobLog(BaseModel):
    """One row per scheduled job run."""

    __tablename__ = "job_logs"

    job_name: Mapped[str] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int] = mapped_column(default=0)
