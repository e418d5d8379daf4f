"""External capability usage counters."""

from datetime import datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class CapabilityUsage(BaseModel):
    """Call count of one capability inside one fixed usage window.

    A window row restarts at zero once its duration has passed since
    ``window_start``.
    """

    __tablename__ = "capability_usage"
    __table_args__ = (
        UniqueConstraint("capability", "window_type", name="uq_capability_usage_window"),
    )

    capability: Mapped[str] = mapped_column(nullable=False, index=True)
    window_type: Mapped[str] = mapped_column(nullable=False)
    call_count: Mapped[int] = mapped_column(default=0)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
