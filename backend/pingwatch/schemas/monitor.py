"""Monitor schemas shared by the registry, the check engine and the control API."""
from datetime import datetime
from enum import Enum
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MonitorType = Literal["http", "tcp", "ping"]
HttpMethod = Literal["GET", "HEAD", "POST"]

DEFAULT_TCP_PORT = 80
DEFAULT_TIMEOUT_SECONDS = 5
DEFAULT_PACKET_COUNT = 3


class ValidationRule(str, Enum):
    """Response validation rules for HTTP monitors."""
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    EQUALS = "equals"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"
    STATUS_EQUALS = "statusEquals"


class CheckStatus(str, Enum):
    """Classified outcome of a check."""
    SUCCESS = "success"
    ERROR = "error"
    UNKNOWN = "unknown"  # Never checked


class MonitorSpec(BaseModel):
    """Snapshot of a monitor definition as seen by the check engine."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    type: MonitorType
    target: str = Field(..., min_length=1)
    name: Optional[str] = None
    interval_minutes: int = Field(..., ge=1)
    active: bool = True

    # HTTP
    method: HttpMethod = "GET"
    request_body: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    validate_response: bool = False
    validation_rule: Optional[ValidationRule] = None
    validation_value: Optional[str] = None

    # TCP / ping
    port: Optional[int] = Field(None, ge=1, le=65535)
    packet_count: Optional[int] = Field(None, ge=1, le=10)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=60)
    max_packet_loss_percent: Optional[float] = Field(None, ge=0, le=100)

    # Health at load time, used for the initial due-time
    last_checked_at: Optional[datetime] = None

    @property
    def effective_port(self) -> int:
        return self.port or DEFAULT_TCP_PORT

    @property
    def effective_timeout(self) -> int:
        return self.timeout_seconds or DEFAULT_TIMEOUT_SECONDS

    @property
    def effective_packet_count(self) -> int:
        return self.packet_count or DEFAULT_PACKET_COUNT

    @property
    def has_validation(self) -> bool:
        """Validation only runs when enabled and given something to compare."""
        return bool(self.validate_response and self.validation_rule and self.validation_value)


class LogEntry(BaseModel):
    """A classified check result, ready to be appended to the log store."""
    check_id: str
    timestamp: datetime
    status: CheckStatus
    message: str = Field(..., min_length=1)
    response_time_ms: Optional[int] = None
    response_status: Optional[int] = None
    error_kind: Optional[str] = None
    response_body: Optional[str] = None


class MonitorHealth(BaseModel):
    """Health fields of a monitor."""
    monitor_id: int
    last_status: CheckStatus
    last_checked_at: Optional[datetime] = None
    uptime_percent: float = Field(
        ...,
        description=(
            "Share of successful checks over the most recent retained log entries. "
            "This is a windowed approximation, not a lifetime figure."
        ),
    )
