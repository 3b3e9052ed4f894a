"""
Pytest configuration and shared fixtures for pingwatch tests.

Provides:
- A temporary SQLite database with the pingwatch schema
- Fake clock, scripted probes, recording updater and in-memory registry
  for driving the scheduler without timers or network
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pingwatch.database import Base, create_engine_for
from pingwatch.models import Monitor
from pingwatch.schemas.monitor import MonitorHealth, MonitorSpec
from pingwatch.services.health import ApplyOutcome, CompletedCheck
from pingwatch.services.probes import Probe, ProbeResult

# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> async_sessionmaker:
    """Session factory bound to a fresh SQLite database file."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


async def create_monitor(session_factory: async_sessionmaker, **fields) -> int:
    """Insert a monitor row and return its id."""
    values = {
        "type": "http",
        "target": "http://example.com",
        "interval_minutes": 5,
        "active": True,
    }
    values.update(fields)
    async with session_factory() as session:
        monitor = Monitor(**values)
        session.add(monitor)
        await session.commit()
        return monitor.id


# ============================================================================
# Engine Fakes
# ============================================================================


START = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_spec(monitor_id: int = 1, **fields) -> MonitorSpec:
    values = {
        "id": monitor_id,
        "type": "http",
        "target": "http://example.com",
        "interval_minutes": 5,
    }
    values.update(fields)
    return MonitorSpec(**values)


class ScriptedProbe(Probe):
    """Probe returning a fixed result, optionally held until a gate opens."""

    def __init__(
        self,
        monitor_type: str = "http",
        result: Optional[ProbeResult] = None,
        gate: Optional[asyncio.Event] = None,
        clock: Optional[FakeClock] = None,
        on_run: Optional[Callable[[MonitorSpec], None]] = None,
        deadline_seconds: float = 5,
    ):
        self.monitor_type = monitor_type
        self.result = result or ProbeResult(succeeded=True, elapsed_ms=12, status_code=200, raw_body="OK")
        self.gate = gate
        self.clock = clock
        self.on_run = on_run
        self.deadline_seconds = deadline_seconds
        self.started: List[int] = []
        self.start_times: List[datetime] = []
        self.current = 0
        self.max_concurrent = 0

    def deadline(self, monitor: MonitorSpec) -> float:
        return self.deadline_seconds

    async def _run(self, monitor: MonitorSpec) -> ProbeResult:
        self.started.append(monitor.id)
        if self.clock is not None:
            self.start_times.append(self.clock())
        self.current += 1
        self.max_concurrent = max(self.max_concurrent, self.current)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.on_run is not None:
                self.on_run(monitor)
            return self.result
        finally:
            self.current -= 1


class RecordingUpdater:
    """Stands in for HealthStateUpdater and records what it is asked to apply."""

    def __init__(self, outcome: ApplyOutcome = ApplyOutcome.APPLIED, error: Optional[Exception] = None):
        self.outcome = outcome
        self.error = error
        self.applied: List[CompletedCheck] = []
        self.forgotten: List[int] = []

    async def apply(self, check: CompletedCheck) -> ApplyOutcome:
        if self.error is not None:
            raise self.error
        self.applied.append(check)
        return self.outcome

    def forget(self, monitor_id: int) -> None:
        self.forgotten.append(monitor_id)


class FakeRegistry:
    """In-memory monitor registry."""

    def __init__(self, monitors: Optional[List[MonitorSpec]] = None):
        self.monitors: Dict[int, MonitorSpec] = {m.id: m for m in monitors or []}
        self.health: Dict[int, MonitorHealth] = {}

    async def list_active_monitors(self) -> List[MonitorSpec]:
        return [m for m in self.monitors.values() if m.active]

    async def get(self, monitor_id: int) -> Optional[MonitorSpec]:
        return self.monitors.get(monitor_id)

    async def get_health(self, monitor_id: int) -> Optional[MonitorHealth]:
        return self.health.get(monitor_id)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
