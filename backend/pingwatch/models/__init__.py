"""Database models."""
from .monitor import Monitor
from .check_log import CheckLog

__all__ = ["Monitor", "CheckLog"]
