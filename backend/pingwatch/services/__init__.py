"""Services for probing, scheduling, and recording monitor health."""
from .health import HealthStateUpdater
from .interpreter import ResultInterpreter
from .log_store import LogStore
from .probes import ProbeRegistry
from .registry import MonitorRegistry
from .scheduler import SchedulerService

__all__ = [
    "HealthStateUpdater",
    "ResultInterpreter",
    "LogStore",
    "ProbeRegistry",
    "MonitorRegistry",
    "SchedulerService",
]
