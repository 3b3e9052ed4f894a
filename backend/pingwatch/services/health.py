"""Health state updater - records classified check results.

For one completed check, in a single transaction:
1. append a log entry (deduplicated by check_id),
2. evict entries beyond the retention cap,
3. recompute uptime over the retained window and write last status,
   last checked time and uptime to the monitor.

Updates for the same monitor are serialized with a per-monitor lock;
different monitors proceed concurrently.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict

from ..database import async_session
from ..schemas.monitor import LogEntry
from ..utils.db_utils import retry_on_lock
from .interpreter import Verdict
from .log_store import LogStore
from .probes import ProbeResult
from .registry import MonitorRegistry

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # Same check_id already recorded
    DISCARDED = "discarded"  # Monitor deleted or deactivated


@dataclass
class CompletedCheck:
    """A finished, classified check for one monitor."""
    check_id: str
    monitor_id: int
    started_at: datetime
    completed_at: datetime
    verdict: Verdict
    result: ProbeResult

    def to_log_entry(self) -> LogEntry:
        return LogEntry(
            check_id=self.check_id,
            timestamp=self.completed_at,
            status=self.verdict.status,
            message=self.verdict.message,
            response_time_ms=self.result.elapsed_ms,
            response_status=self.result.status_code,
            error_kind=self.result.error_kind,
            response_body=self.result.raw_body,
        )


class HealthStateUpdater:
    """Applies completed checks to the log store and monitor registry."""

    def __init__(
        self,
        registry: MonitorRegistry,
        log_store: LogStore,
        session_factory=async_session,
        retention_limit: int = 100,
        uptime_window: int = 100,
        max_retries: int = 3,
        retry_base_delay: float = 0.1,
    ):
        self.registry = registry
        self.log_store = log_store
        self.session_factory = session_factory
        self.retention_limit = retention_limit
        self.uptime_window = uptime_window
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def apply(self, check: CompletedCheck) -> ApplyOutcome:
        """Record a completed check, retrying transient database errors with backoff."""
        async with self._locks[check.monitor_id]:
            outcome = await retry_on_lock(
                lambda: self._apply_once(check),
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
            )

        if outcome is ApplyOutcome.DISCARDED:
            logger.debug(f"Dropped result for monitor {check.monitor_id}: monitor removed or inactive")
        elif outcome is ApplyOutcome.DUPLICATE:
            logger.debug(f"Ignored duplicate result {check.check_id} for monitor {check.monitor_id}")
        return outcome

    def forget(self, monitor_id: int) -> None:
        """Drop per-monitor state for a removed monitor."""
        lock = self._locks.get(monitor_id)
        if lock is not None and not lock.locked():
            del self._locks[monitor_id]

    async def _apply_once(self, check: CompletedCheck) -> ApplyOutcome:
        entry = check.to_log_entry()

        async with self.session_factory() as session:
            async with session.begin():
                monitor = await self.registry.load_for_update(session, check.monitor_id)
                if monitor is None or not monitor.active:
                    return ApplyOutcome.DISCARDED

                if not await self.log_store.append(check.monitor_id, entry, session=session):
                    return ApplyOutcome.DUPLICATE

                await self.log_store.evict_beyond(check.monitor_id, self.retention_limit, session=session)
                window = min(self.uptime_window, self.retention_limit)
                uptime = await self.log_store.uptime(check.monitor_id, window, session=session)

                await self.registry.update_health(
                    check.monitor_id,
                    entry.status,
                    entry.timestamp,
                    uptime if uptime is not None else 0.0,
                    session=session,
                )

        return ApplyOutcome.APPLIED
