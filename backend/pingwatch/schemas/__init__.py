"""Pydantic schemas for the check engine and control API."""
from .monitor import (
    CheckStatus,
    LogEntry,
    MonitorHealth,
    MonitorSpec,
    ValidationRule,
)
from .scheduler import (
    ScheduleInfo,
    SchedulerMetrics,
    SchedulerStatus,
)

__all__ = [
    "CheckStatus",
    "LogEntry",
    "MonitorHealth",
    "MonitorSpec",
    "ValidationRule",
    "ScheduleInfo",
    "SchedulerMetrics",
    "SchedulerStatus",
]
