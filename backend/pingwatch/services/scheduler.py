"""Scheduler service - decides when each monitor is checked and runs the checks.

Design:
- ScheduleState keeps one entry per registered monitor and a min-heap of
  due-times. It is created per SchedulerService and can be driven directly
  in tests without timers.
- An APScheduler tick (every few seconds) moves due monitors onto a FIFO
  queue. A fixed number of worker tasks drain the queue, so a large monitor
  count never opens more than max_concurrent_checks outbound connections;
  when all workers are busy, due monitors wait in arrival order.
- At most one check per monitor is queued or running. A monitor that comes
  due while busy is skipped for that tick and logged as an overrun.
- The next due-time is the completion time of the current check plus the
  monitor's interval, so slow targets do not cause back-to-back checks.
- Deleting or deactivating a monitor disarms it immediately. A check that
  is already running finishes, but its result is dropped at apply time.

Per-monitor lifecycle: parked -> scheduled -> queued -> in_flight -> scheduled,
any state -> parked on deactivation, any state -> removed on deletion.
"""
import asyncio
import heapq
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings, settings as default_settings
from ..database import async_session
from ..schemas.monitor import CheckStatus, MonitorSpec
from ..schemas.scheduler import ScheduleInfo, SchedulerMetrics, SchedulerStatus
from ..utils.timeutils import utcnow
from .health import ApplyOutcome, CompletedCheck, HealthStateUpdater
from .interpreter import ResultInterpreter
from .log_store import LogStore
from .probes import INTERNAL, TIMEOUT, ProbeRegistry, ProbeResult, build_probe_registry
from .registry import MonitorRegistry

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    PARKED = "parked"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"


@dataclass
class ScheduleEntry:
    """Scheduling bookkeeping for one monitor."""
    monitor: MonitorSpec
    epoch: int
    parked: bool = False
    due_at: Optional[datetime] = None
    heap_token: Optional[int] = None
    active_check: Optional[str] = None  # check_id of the queued or running check
    in_flight: bool = False
    last_completed_at: Optional[datetime] = None

    @property
    def busy(self) -> bool:
        return self.active_check is not None

    @property
    def state(self) -> MonitorState:
        if self.parked:
            return MonitorState.PARKED
        if self.in_flight:
            return MonitorState.IN_FLIGHT
        if self.busy:
            return MonitorState.QUEUED
        return MonitorState.SCHEDULED


@dataclass(frozen=True)
class CheckJob:
    """One dispatched check, identified by check_id."""
    monitor_id: int
    epoch: int
    check_id: str


@dataclass
class ScheduleState:
    """Authoritative due-times for every registered monitor."""
    entries: Dict[int, ScheduleEntry] = field(default_factory=dict)
    _heap: List[Tuple[datetime, int, int]] = field(default_factory=list)
    _counter: Iterator[int] = field(default_factory=itertools.count)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, monitor_id: int) -> bool:
        return monitor_id in self.entries

    def get(self, monitor_id: int) -> Optional[ScheduleEntry]:
        return self.entries.get(monitor_id)

    def add(self, monitor: MonitorSpec) -> ScheduleEntry:
        entry = ScheduleEntry(monitor=monitor, epoch=next(self._counter))
        self.entries[monitor.id] = entry
        return entry

    def remove(self, monitor_id: int) -> Optional[ScheduleEntry]:
        entry = self.entries.pop(monitor_id, None)
        if entry is not None:
            self.disarm(entry)
        return entry

    def arm(self, entry: ScheduleEntry, due_at: datetime) -> None:
        """Set the due-time, replacing any earlier one."""
        token = next(self._counter)
        entry.due_at = due_at
        entry.heap_token = token
        heapq.heappush(self._heap, (due_at, token, entry.monitor.id))

    def disarm(self, entry: ScheduleEntry) -> None:
        # Heap items are dropped lazily once their token no longer matches
        entry.due_at = None
        entry.heap_token = None

    def park(self, entry: ScheduleEntry) -> None:
        """Stop scheduling and invalidate any queued or running check."""
        entry.parked = True
        entry.epoch = next(self._counter)
        self.disarm(entry)

    def pop_due(self, now: datetime) -> List[ScheduleEntry]:
        """Remove and return entries whose due-time has passed, earliest first."""
        due = []
        while self._heap and self._heap[0][0] <= now:
            _, token, monitor_id = heapq.heappop(self._heap)
            entry = self.entries.get(monitor_id)
            if entry is None or entry.heap_token != token:
                continue
            entry.heap_token = None
            due.append(entry)
        return due

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in MonitorState}
        for entry in self.entries.values():
            counts[entry.state.value] += 1
        return counts

    def clear(self) -> None:
        self.entries.clear()
        self._heap.clear()


class SchedulerService:
    """Schedules monitors and runs their checks on a bounded worker pool."""

    def __init__(
        self,
        registry: MonitorRegistry,
        updater: HealthStateUpdater,
        probes: ProbeRegistry,
        interpreter: ResultInterpreter,
        log_store: LogStore,
        config: Settings = default_settings,
        state: Optional[ScheduleState] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.updater = updater
        self.probes = probes
        self.interpreter = interpreter
        self.log_store = log_store
        self.config = config
        self.state = state if state is not None else ScheduleState()
        self.clock = clock
        self.metrics = SchedulerMetrics()

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._running = False
        # Control-signal sequence number and the last one seen per monitor id
        self._changes = 0
        self._changed_at: Dict[int, int] = {}

    @property
    def running(self) -> bool:
        return self._running

    # Lifecycle

    async def start(self):
        """Start workers, load monitors from the registry and start the timers."""
        if self._running:
            return

        self.start_workers()
        count = await self.load()

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=self.config.scheduler_tick_seconds),
            id="tick",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=self.config.scheduler_tick_seconds,
        )
        self.scheduler.add_job(
            self._refresh_job,
            trigger=IntervalTrigger(minutes=self.config.schedule_refresh_minutes),
            id="refresh_schedules",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._report_health,
            trigger=IntervalTrigger(minutes=self.config.health_report_minutes),
            id="health_report",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._cleanup_old_records,
            trigger=IntervalTrigger(hours=self.config.cleanup_interval_hours),
            id="cleanup_old_records",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._running = True
        logger.info(
            f"Scheduler started (monitors={count}, tick={self.config.scheduler_tick_seconds}s, "
            f"max_concurrent={self.config.max_concurrent_checks})"
        )

    def start_workers(self):
        """Spawn the worker pool. Called by start(); usable alone when driving tick() by hand."""
        for index in range(len(self._workers), self.config.max_concurrent_checks):
            self._workers.append(asyncio.create_task(self._worker(index), name=f"check-worker-{index}"))

    async def stop(self):
        """Stop timers and workers and tear down schedule state."""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        self.state.clear()
        self._changed_at.clear()
        if self._running:
            self._running = False
            logger.info("Scheduler stopped")

    async def wait_idle(self):
        """Wait until every dispatched check has finished and been applied."""
        await self._queue.join()

    # Registration

    async def load(self) -> int:
        """Populate the schedule from the registry's active monitors."""
        monitors = await self.registry.list_active_monitors()
        for monitor in monitors:
            self.register(monitor)
        return len(monitors)

    async def refresh(self) -> int:
        """Resync with the registry, picking up changes whose signals were missed.

        A monitor registered, parked or removed while a registry read was
        pending keeps that newer state; the read result is ignored for it.
        """
        mark = self._changes
        monitors = await self.registry.list_active_monitors()
        active_ids = set()
        skipped = set()
        for monitor in monitors:
            if self._changed_since(monitor.id, mark):
                skipped.add(monitor.id)
                continue
            active_ids.add(monitor.id)
            self.register(monitor)

        for monitor_id in list(self.state.entries):
            if monitor_id in active_ids or monitor_id in skipped:
                continue
            await self._resync(monitor_id)

        logger.info(f"Refreshed schedules: {len(active_ids)} active monitors")
        return len(active_ids)

    async def _resync(self, monitor_id: int) -> None:
        """Reload one monitor from the registry: park it if inactive, drop it if gone."""
        mark = self._changes
        monitor = await self.registry.get(monitor_id)
        if self._changed_since(monitor_id, mark):
            return
        if monitor is None:
            self.unregister(monitor_id)
        else:
            self.register(monitor)

    def _mark_changed(self, monitor_id: int) -> None:
        self._changes += 1
        self._changed_at[monitor_id] = self._changes

    def _changed_since(self, monitor_id: int, mark: int) -> bool:
        return self._changed_at.get(monitor_id, 0) > mark

    def register(self, monitor: MonitorSpec) -> ScheduleEntry:
        """Insert or update a monitor's schedule entry. Inactive monitors are parked."""
        self._mark_changed(monitor.id)
        now = self.clock()
        entry = self.state.get(monitor.id)

        if entry is None:
            entry = self.state.add(monitor)
            if monitor.active:
                self.state.arm(entry, self._next_due(entry, now))
            else:
                entry.parked = True
            return entry

        interval_changed = entry.monitor.interval_minutes != monitor.interval_minutes
        entry.monitor = monitor

        if not monitor.active:
            if not entry.parked:
                self.state.park(entry)
                logger.debug(f"Monitor {monitor.id} parked")
            return entry

        if entry.parked:
            entry.parked = False
            # A busy entry is re-armed when its current check is released
            if not entry.busy:
                self.state.arm(entry, self._next_due(entry, now))
            logger.debug(f"Monitor {monitor.id} reactivated")
        elif interval_changed and not entry.busy:
            self.state.arm(entry, self._next_due(entry, now))
        return entry

    def unregister(self, monitor_id: int) -> bool:
        """Remove a monitor from the schedule. A running check's result will be dropped."""
        self._mark_changed(monitor_id)
        entry = self.state.remove(monitor_id)
        if entry is None:
            return False
        if entry.busy:
            logger.debug(f"Monitor {monitor_id} removed while its check is in flight; result will be discarded")
        self.updater.forget(monitor_id)
        return True

    # Control hooks for the monitor API
    on_monitor_created = register
    on_monitor_updated = register
    on_monitor_deleted = unregister

    def _next_due(self, entry: ScheduleEntry, now: datetime) -> datetime:
        last = entry.last_completed_at or entry.monitor.last_checked_at
        if last is None:
            return now
        return max(now, last + timedelta(minutes=entry.monitor.interval_minutes))

    # Dispatch

    async def tick(self) -> int:
        """Dispatch every monitor whose due-time has passed. Returns the number queued."""
        dispatched = 0
        for entry in self.state.pop_due(self.clock()):
            # Busy entries stay unarmed until released; only a direct arm() reaches this
            if entry.busy:
                self.metrics.overruns += 1
                logger.warning(f"Check overrun: monitor {entry.monitor.id} is still {entry.state.value}, skipping")
                continue
            self._enqueue(entry)
            dispatched += 1

        if dispatched:
            logger.debug(f"Dispatched {dispatched} checks (queue depth {self._queue.qsize()})")
        return dispatched

    def trigger(self, monitor_id: int) -> bool:
        """Run a check now for a scheduled, idle monitor."""
        entry = self.state.get(monitor_id)
        if entry is None or entry.parked:
            return False
        if entry.busy:
            self.metrics.overruns += 1
            logger.warning(f"Check overrun: manual check for monitor {monitor_id} while {entry.state.value}")
            return False

        self.state.disarm(entry)
        self._enqueue(entry)
        logger.info(f"Manually triggered check for monitor {monitor_id}")
        return True

    def _enqueue(self, entry: ScheduleEntry) -> None:
        job = CheckJob(monitor_id=entry.monitor.id, epoch=entry.epoch, check_id=uuid.uuid4().hex)
        entry.active_check = job.check_id
        self._queue.put_nowait(job)

    def _owns(self, entry: ScheduleEntry, job: CheckJob) -> bool:
        """Whether the job's result may still be applied."""
        return (
            self.state.get(job.monitor_id) is entry
            and entry.epoch == job.epoch
            and not entry.parked
        )

    def _release(self, entry: ScheduleEntry, rearm_at: datetime) -> None:
        entry.active_check = None
        entry.in_flight = False
        if self.state.get(entry.monitor.id) is entry and not entry.parked:
            self.state.arm(entry, rearm_at)

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            except Exception:
                logger.exception(f"Worker {index} failed running check for monitor {job.monitor_id}")
            finally:
                self._queue.task_done()

    async def _run_job(self, job: CheckJob):
        entry = self.state.get(job.monitor_id)
        if entry is None or entry.active_check != job.check_id:
            return
        if not self._owns(entry, job):
            self._release(entry, self.clock())
            return

        entry.in_flight = True
        monitor = entry.monitor
        started_at = self.clock()
        completed_at = started_at

        try:
            result = await self._execute(monitor)
            verdict = self.interpreter.classify(monitor, result)
            completed_at = self.clock()
            self._record_metrics(verdict.status, result)

            if self._owns(entry, job):
                await self._apply(CompletedCheck(
                    check_id=job.check_id,
                    monitor_id=monitor.id,
                    started_at=started_at,
                    completed_at=completed_at,
                    verdict=verdict,
                    result=result,
                ))
            else:
                self.metrics.discarded_results += 1
                logger.debug(f"Discarded result for monitor {monitor.id}: removed or deactivated during check")

            logger.debug(f"Monitor {monitor.id} ({monitor.type}): {verdict.status.value} - {verdict.message}")
        finally:
            entry.last_completed_at = completed_at
            self._release(entry, completed_at + timedelta(minutes=entry.monitor.interval_minutes))

    async def _execute(self, monitor: MonitorSpec) -> ProbeResult:
        """Run the probe with a hard upper bound so a stuck call cannot hold a worker."""
        hard_limit = self.probes.deadline(monitor) + self.config.probe_grace_seconds
        try:
            return await asyncio.wait_for(self.probes.run(monitor), timeout=hard_limit)
        except asyncio.TimeoutError:
            return ProbeResult(
                succeeded=False,
                elapsed_ms=int(hard_limit * 1000),
                error_kind=TIMEOUT,
                details=f"Check cancelled after {hard_limit:g}s",
            )
        except Exception as e:
            logger.exception(f"Probe raised for monitor {monitor.id}")
            return ProbeResult(succeeded=False, error_kind=INTERNAL, details=f"Probe failed: {e}")

    async def _apply(self, check: CompletedCheck):
        try:
            outcome = await self.updater.apply(check)
        except Exception as e:
            self.metrics.lost_results += 1
            logger.error(f"Failed to record result for monitor {check.monitor_id}: {e}")
            return
        if outcome is ApplyOutcome.DISCARDED:
            self.metrics.discarded_results += 1
            # The registry says deleted or inactive but no control signal arrived
            try:
                await self._resync(check.monitor_id)
            except Exception as e:
                logger.error(f"Failed to reload monitor {check.monitor_id} after discarded result: {e}")

    def _record_metrics(self, status: CheckStatus, result: ProbeResult):
        m = self.metrics
        m.total_checks += 1
        if status == CheckStatus.SUCCESS:
            m.successful_checks += 1
        else:
            m.failed_checks += 1
        response_time = result.elapsed_ms or 0
        m.avg_response_time_ms = (m.avg_response_time_ms * (m.total_checks - 1) + response_time) / m.total_checks

    # Status

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            monitors=len(self.state),
            states=self.state.counts(),
            queue_depth=self._queue.qsize(),
            metrics=self.metrics.model_copy(),
        )

    def get_schedule(self, monitor_id: int) -> Optional[ScheduleInfo]:
        entry = self.state.get(monitor_id)
        if entry is None:
            return None
        return ScheduleInfo(
            monitor_id=monitor_id,
            state=entry.state.value,
            due_at=entry.due_at,
            last_completed_at=entry.last_completed_at,
        )

    # Periodic jobs

    async def _tick_job(self):
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Error dispatching checks: {e}")

    async def _refresh_job(self):
        try:
            await self.refresh()
        except Exception as e:
            logger.error(f"Error refreshing schedules: {e}")

    async def _report_health(self):
        """Log metrics and replace any worker that died."""
        dead = [task for task in self._workers if task.done()]
        if dead:
            logger.warning(f"Health check: {len(dead)} check workers stopped, restarting")
            self._workers = [task for task in self._workers if not task.done()]
            self.start_workers()

        status = self.get_status()
        logger.info(
            f"Scheduler health: monitors={status.monitors} states={status.states} "
            f"queue={status.queue_depth} metrics={status.metrics.model_dump()}"
        )

    async def _cleanup_old_records(self):
        """Delete log entries past the retention age or beyond the per-monitor cap."""
        try:
            cutoff = self.clock() - timedelta(days=self.config.log_retention_days)
            removed = await self.log_store.prune_older_than(cutoff)
            removed += await self.log_store.enforce_retention(self.config.log_retention_limit)
            logger.info(f"Cleaned up {removed} old check log entries")
        except Exception as e:
            logger.error(f"Error cleaning up records: {e}")


def build_scheduler(config: Settings = default_settings, session_factory=async_session) -> SchedulerService:
    """Wire a scheduler with database-backed registry, log store and updater."""
    registry = MonitorRegistry(session_factory)
    log_store = LogStore(session_factory)
    updater = HealthStateUpdater(
        registry,
        log_store,
        session_factory=session_factory,
        retention_limit=config.log_retention_limit,
        uptime_window=config.uptime_window,
        max_retries=config.apply_max_retries,
        retry_base_delay=config.apply_retry_base_delay,
    )
    return SchedulerService(
        registry=registry,
        updater=updater,
        probes=build_probe_registry(config),
        interpreter=ResultInterpreter(
            http_success_max_status=config.http_success_max_status,
            ping_max_loss_percent=config.ping_max_loss_percent,
        ),
        log_store=log_store,
        config=config,
    )
