"""
Ephemeral Storage Service — per-workflow keyed tables.

Each workflow owns any number of logical tables whose shape is inferred
from the rows written to them. Rows are unique by a record key within a
table, so inserting the same item twice is a no-op; that is what makes
the dedup pattern work under at-least-once delivery:

    new_items = await storage.filter_new(wf_id, "seen", items, key_field="id")
    for item in new_items:
        ...side effect...
        await storage.insert(wf_id, "seen", item, key=item["id"])

There is no cross-execution locking. Two executions racing on the same
key both get a consistent answer from the unique constraint: exactly one
insert wins.

Rows may carry an expiry; expired rows are invisible to reads and are
removed by ``cleanup_expired`` (scheduled maintenance job).
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.storage import StorageRecord, StorageTable

logger = logging.getLogger(__name__)

SCALAR_FIELD = "value"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_key(item: Any, key_field: Optional[str] = None) -> str:
    """Stable key for an item.

    ``key_field`` picks a field of a dict item; otherwise a dict's ``id`` is
    used when present, scalars key by their string form and anything else
    by a SHA-256 of its canonical JSON.
    """
    if key_field:
        if not isinstance(item, dict) or key_field not in item:
            raise ValueError(f"Item has no key field '{key_field}': {item!r}")
        value = item[key_field]
    elif isinstance(item, dict) and "id" in item:
        value = item["id"]
    else:
        value = item

    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _as_row(item: Any) -> dict:
    return dict(item) if isinstance(item, dict) else {SCALAR_FIELD: item}


def _from_row(data: dict) -> Any:
    if set(data) == {SCALAR_FIELD}:
        return data[SCALAR_FIELD]
    return data


class EphemeralStorage:
    """Keyed tables scoped by workflow id, backed by SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    # ─── Tables ───────────────────────────────────────────────

    async def _find_table(
        self, session: AsyncSession, workflow_id: str, table: str
    ) -> Optional[StorageTable]:
        result = await session.execute(
            select(StorageTable).where(
                StorageTable.workflow_id == workflow_id,
                StorageTable.name == table,
            )
        )
        return result.scalar_one_or_none()

    async def _ensure_table(self, workflow_id: str, table: str, columns: Iterable[str] = ()) -> str:
        """Return the table id, creating the table if needed."""
        async with self._session_factory() as session:
            existing = await self._find_table(session, workflow_id, table)
            if existing is not None:
                return existing.id
            created = StorageTable(workflow_id=workflow_id, name=table, columns=list(columns))
            session.add(created)
            try:
                await session.commit()
                logger.info(f"Created storage table '{table}' for workflow {workflow_id}")
                return created.id
            except IntegrityError:
                # Created concurrently by another execution
                await session.rollback()
                existing = await self._find_table(session, workflow_id, table)
                return existing.id

    async def _extend_columns(self, session: AsyncSession, table_id: str, row: dict) -> None:
        table = await session.get(StorageTable, table_id)
        if table is None:
            return
        columns = list(table.columns or [])
        added = [name for name in row if name not in columns]
        if added:
            table.columns = columns + added

    async def create_table(
        self, workflow_id: str, table: str, columns: Optional[list[str]] = None
    ) -> dict:
        """Create a table (idempotent) and return its description."""
        await self._ensure_table(workflow_id, table, columns or [])
        async with self._session_factory() as session:
            found = await self._find_table(session, workflow_id, table)
            return {"table": found.name, "columns": list(found.columns or [])}

    async def drop_table(self, workflow_id: str, table: str) -> bool:
        async with self._session_factory() as session:
            found = await self._find_table(session, workflow_id, table)
            if found is None:
                return False
            await session.execute(delete(StorageRecord).where(StorageRecord.table_id == found.id))
            await session.delete(found)
            await session.commit()
            return True

    async def list_tables(self, workflow_id: str) -> list[dict]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StorageTable)
                .where(StorageTable.workflow_id == workflow_id)
                .order_by(StorageTable.name)
            )
            return [
                {"table": t.name, "columns": list(t.columns or [])}
                for t in result.scalars().all()
            ]

    # ─── Writes ───────────────────────────────────────────────

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[datetime]:
        if not ttl_seconds:
            return None
        return self._clock() + timedelta(seconds=float(ttl_seconds))

    async def insert(
        self,
        workflow_id: str,
        table: str,
        item: Any,
        key: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Insert one row; returns False when the key is already present."""
        row = _as_row(item)
        key = str(key) if key is not None else record_key(item)
        table_id = await self._ensure_table(workflow_id, table, row.keys())
        now = self._clock()

        async with self._session_factory() as session:
            # An expired row with the same key no longer counts
            await session.execute(
                delete(StorageRecord).where(
                    StorageRecord.table_id == table_id,
                    StorageRecord.record_key == key,
                    StorageRecord.expires_at.is_not(None),
                    StorageRecord.expires_at <= now,
                )
            )
            session.add(
                StorageRecord(
                    table_id=table_id,
                    record_key=key,
                    data=row,
                    expires_at=self._expiry(ttl_seconds),
                    created_at=now,
                )
            )
            await self._extend_columns(session, table_id, row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def insert_many(
        self,
        workflow_id: str,
        table: str,
        items: Iterable[Any],
        key_field: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> int:
        """Insert each item; returns how many were new."""
        inserted = 0
        for item in items:
            if await self.insert(
                workflow_id, table, item,
                key=record_key(item, key_field), ttl_seconds=ttl_seconds,
            ):
                inserted += 1
        return inserted

    async def increment(
        self,
        workflow_id: str,
        table: str,
        key: str,
        field: str = "count",
        by: float = 1,
        ttl_seconds: Optional[float] = None,
    ) -> float:
        """Add ``by`` to a numeric field, creating the row at zero.

        Read-modify-write without locking: concurrent increments of the
        same key may lose updates.
        """
        table_id = await self._ensure_table(workflow_id, table, ["key", field])
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(StorageRecord).where(
                    StorageRecord.table_id == table_id,
                    StorageRecord.record_key == str(key),
                    self._live(now),
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                await session.execute(
                    delete(StorageRecord).where(
                        StorageRecord.table_id == table_id,
                        StorageRecord.record_key == str(key),
                    )
                )
                record = StorageRecord(
                    table_id=table_id,
                    record_key=str(key),
                    data={"key": key, field: 0},
                    expires_at=self._expiry(ttl_seconds),
                    created_at=now,
                )
                session.add(record)
            value = (record.data or {}).get(field, 0) + by
            record.data = {**(record.data or {}), field: value}
            await session.commit()
            return value

    async def delete(
        self,
        workflow_id: str,
        table: str,
        key: Optional[str] = None,
        where: Optional[dict] = None,
    ) -> int:
        """Delete by key, by field equality, or everything when neither is given."""
        async with self._session_factory() as session:
            found = await self._find_table(session, workflow_id, table)
            if found is None:
                return 0
            result = await session.execute(
                select(StorageRecord).where(StorageRecord.table_id == found.id)
            )
            removed = 0
            for record in result.scalars().all():
                if key is not None and record.record_key != str(key):
                    continue
                if where and not _matches(record.data, where):
                    continue
                await session.delete(record)
                removed += 1
            await session.commit()
            return removed

    # ─── Reads ────────────────────────────────────────────────

    @staticmethod
    def _live(now: datetime):
        return or_(StorageRecord.expires_at.is_(None), StorageRecord.expires_at > now)

    async def _live_records(self, workflow_id: str, table: str) -> list[StorageRecord]:
        now = self._clock()
        async with self._session_factory() as session:
            found = await self._find_table(session, workflow_id, table)
            if found is None:
                return []
            result = await session.execute(
                select(StorageRecord)
                .where(StorageRecord.table_id == found.id, self._live(now))
                .order_by(StorageRecord.created_at)
            )
            return list(result.scalars().all())

    async def query(
        self,
        workflow_id: str,
        table: str,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list:
        """Live rows in insertion order, filtered by field equality."""
        rows = [
            _from_row(record.data)
            for record in await self._live_records(workflow_id, table)
            if not where or _matches(record.data, where)
        ]
        return rows[:limit] if limit else rows

    async def keys(self, workflow_id: str, table: str) -> set[str]:
        return {record.record_key for record in await self._live_records(workflow_id, table)}

    async def exists(self, workflow_id: str, table: str, key: Any) -> bool:
        return str(key) in await self.keys(workflow_id, table)

    async def filter_new(
        self,
        workflow_id: str,
        table: str,
        items: Iterable[Any],
        key_field: Optional[str] = None,
    ) -> list:
        """Items whose key is not stored (or only stored with an expired row)."""
        known = await self.keys(workflow_id, table)
        return [item for item in items if record_key(item, key_field) not in known]

    # ─── Maintenance ──────────────────────────────────────────

    async def cleanup_expired(self) -> int:
        """Delete every expired row across all workflows."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                delete(StorageRecord).where(
                    and_(StorageRecord.expires_at.is_not(None), StorageRecord.expires_at <= now)
                )
            )
            await session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Removed {removed} expired storage record(s)")
        return removed


def _matches(data: dict, where: dict) -> bool:
    return all(data.get(field) == value for field, value in where.items())
