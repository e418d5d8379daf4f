"""
Usage Service — call counts of external capabilities per time window.

Every call the resilience layer lets through to an external capability
is counted in four fixed windows (15 minutes, 1 hour, 24 hours and 30
days). A window starts at its first call and restarts at zero on the
first call after its duration has passed, so the counts show how much of
a provider's quota has been spent in the current period.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.capability_usage import CapabilityUsage

logger = logging.getLogger(__name__)

USAGE_WINDOWS: dict[str, timedelta] = {
    "last_15_minutes": timedelta(minutes=15),
    "last_hour": timedelta(hours=1),
    "last_24_hours": timedelta(hours=24),
    "last_month": timedelta(days=30),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without a timezone
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class UsageTracker:
    """Persistent per-capability usage counters."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def record(self, capability: str) -> None:
        """Count one call of ``capability`` in every window."""
        for attempt in range(2):
            async with self._session_factory() as session:
                await self._count(session, capability, self._clock())
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    # Another call created the first window row concurrently
                    await session.rollback()
                    if attempt:
                        raise

    async def _count(self, session: AsyncSession, capability: str, now: datetime) -> None:
        result = await session.execute(
            select(CapabilityUsage).where(CapabilityUsage.capability == capability)
        )
        rows = {row.window_type: row for row in result.scalars().all()}

        for window_type, duration in USAGE_WINDOWS.items():
            row = rows.get(window_type)
            if row is None:
                session.add(CapabilityUsage(
                    capability=capability,
                    window_type=window_type,
                    call_count=1,
                    window_start=now,
                ))
            elif now - _aware(row.window_start) > duration:
                row.call_count = 1
                row.window_start = now
            else:
                await session.execute(
                    update(CapabilityUsage)
                    .where(CapabilityUsage.id == row.id)
                    .values(call_count=CapabilityUsage.call_count + 1)
                )

    async def summary(self, capability: Optional[str] = None) -> dict[str, dict]:
        """Current counts per capability and window. Expired windows read as zero."""
        now = self._clock()
        query = select(CapabilityUsage).order_by(CapabilityUsage.capability)
        if capability:
            query = query.where(CapabilityUsage.capability == capability)

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        usage: dict[str, dict] = {}
        for row in rows:
            duration = USAGE_WINDOWS.get(row.window_type)
            if duration is None:
                continue
            start = _aware(row.window_start)
            expired = now - start > duration
            usage.setdefault(row.capability, {})[row.window_type] = {
                "count": 0 if expired else row.call_count,
                "window_start": None if expired else start.isoformat(),
                "window_seconds": int(duration.total_seconds()),
            }
        return usage
