"""Scheduler status schemas for the control API."""
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel

from .monitor import MonitorHealth


class SchedulerMetrics(BaseModel):
    """Counters kept by the scheduler since start."""
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    avg_response_time_ms: float = 0.0
    overruns: int = 0
    discarded_results: int = 0
    lost_results: int = 0


class SchedulerStatus(BaseModel):
    """Overall scheduler state."""
    running: bool
    monitors: int
    states: Dict[str, int]  # parked, scheduled, queued, in_flight
    queue_depth: int
    metrics: SchedulerMetrics


class ScheduleInfo(BaseModel):
    """Schedule and health of a single monitor."""
    monitor_id: int
    state: str
    due_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    health: Optional[MonitorHealth] = None
