"""Ephemeral storage tables and records."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class StorageTable(BaseModel):
    """Logical table owned by one workflow.

    ``columns`` is inferred from the first insert and extended when later
    inserts bring new fields.
    """

    __tablename__ = "storage_tables"
    __table_args__ = (
        UniqueConstraint("workflow_id", "name", name="uq_storage_table_workflow_name"),
    )

    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    columns: Mapped[list] = mapped_column(JSON, default=list)


class StorageRecord(BaseModel):
    """One row of an ephemeral table, unique by ``record_key`` within the table."""

    __tablename__ = "storage_records"
    __table_args__ = (
        UniqueConstraint("table_id", "record_key", name="uq_storage_record_key"),
    )

    table_id: Mapped[str] = mapped_column(
        ForeignKey("storage_tables.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    record_key: Mapped[str] = mapped_column(nullable=False)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
