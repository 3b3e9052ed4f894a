"""Log store - append-only per-monitor check history with bounded retention."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import async_session
from ..models import CheckLog
from ..schemas.monitor import CheckStatus, LogEntry
from ..utils.db_utils import session_scope

logger = logging.getLogger(__name__)

# Stored response bodies are truncated to this many characters
MAX_STORED_BODY = 1000


class LogStore:
    """Check history per monitor."""

    def __init__(self, session_factory=async_session, max_body_chars: int = MAX_STORED_BODY):
        self.session_factory = session_factory
        self.max_body_chars = max_body_chars

    def _newest_first(self, monitor_id: int):
        return (
            select(CheckLog.id)
            .where(CheckLog.monitor_id == monitor_id)
            .order_by(CheckLog.timestamp.desc(), CheckLog.id.desc())
        )

    async def append(self, monitor_id: int, entry: LogEntry, session: Optional[AsyncSession] = None) -> bool:
        """Append an entry. Returns False if an entry with the same check_id exists."""
        async with session_scope(self.session_factory, session) as session:
            existing = await session.execute(
                select(CheckLog.id).where(CheckLog.check_id == entry.check_id)
            )
            if existing.first() is not None:
                return False

            body = entry.response_body
            if body is not None:
                body = body[:self.max_body_chars]

            session.add(CheckLog(
                monitor_id=monitor_id,
                check_id=entry.check_id,
                timestamp=entry.timestamp,
                status=entry.status.value,
                message=entry.message,
                response_time_ms=entry.response_time_ms,
                response_status=entry.response_status,
                error_kind=entry.error_kind,
                response_body=body,
            ))
            await session.flush()
        return True

    async def evict_beyond(self, monitor_id: int, limit: int, session: Optional[AsyncSession] = None) -> int:
        """Delete the oldest entries so that at most `limit` remain."""
        async with session_scope(self.session_factory, session) as session:
            keep = self._newest_first(monitor_id).limit(limit)
            result = await session.execute(
                delete(CheckLog)
                .where(CheckLog.monitor_id == monitor_id, CheckLog.id.not_in(keep))
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    async def uptime(self, monitor_id: int, window: int, session: Optional[AsyncSession] = None) -> Optional[float]:
        """Percentage of successful checks over the newest `window` retained entries.

        Returns None when the monitor has no entries.
        """
        async with session_scope(self.session_factory, session) as session:
            recent = (
                select(CheckLog.status)
                .where(CheckLog.monitor_id == monitor_id)
                .order_by(CheckLog.timestamp.desc(), CheckLog.id.desc())
                .limit(window)
                .subquery()
            )
            result = await session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(case((recent.c.status == CheckStatus.SUCCESS.value, 1), else_=0)), 0),
                ).select_from(recent)
            )
            total, successes = result.one()

        if not total:
            return None
        return round(100 * successes / total, 1)

    async def recent(self, monitor_id: int, limit: int = 25, session: Optional[AsyncSession] = None) -> List[LogEntry]:
        """Newest entries first."""
        async with session_scope(self.session_factory, session) as session:
            result = await session.execute(
                select(CheckLog)
                .where(CheckLog.monitor_id == monitor_id)
                .order_by(CheckLog.timestamp.desc(), CheckLog.id.desc())
                .limit(limit)
            )
            rows = result.scalars().all()

        return [
            LogEntry(
                check_id=row.check_id,
                timestamp=row.timestamp,
                status=row.status,
                message=row.message,
                response_time_ms=row.response_time_ms,
                response_status=row.response_status,
                error_kind=row.error_kind,
                response_body=row.response_body,
            )
            for row in rows
        ]

    async def prune_older_than(self, cutoff: datetime) -> int:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                delete(CheckLog)
                .where(CheckLog.timestamp < cutoff)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    async def enforce_retention(self, limit: int) -> int:
        """Apply the per-monitor entry cap to every monitor."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(CheckLog.monitor_id)
                .group_by(CheckLog.monitor_id)
                .having(func.count(CheckLog.id) > limit)
            )
            monitor_ids = result.scalars().all()

        removed = 0
        for monitor_id in monitor_ids:
            removed += await self.evict_beyond(monitor_id, limit)
        return removed
