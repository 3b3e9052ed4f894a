"""CheckLog model - append-only history of check attempts."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.timeutils import utcnow


class CheckLog(Base):
    """One check attempt for a monitor. Never updated after insert."""

    __tablename__ = "check_logs"
    __table_args__ = (
        Index("ix_check_logs_monitor_timestamp", "monitor_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False)
    check_id = Column(String, nullable=False, unique=True)  # Dedup key for a single dispatch
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    status = Column(String, nullable=False)  # success, error
    message = Column(String, nullable=False)
    response_time_ms = Column(Integer, nullable=True)
    response_status = Column(Integer, nullable=True)  # HTTP status code
    error_kind = Column(String, nullable=True)
    response_body = Column(String, nullable=True)  # Truncated

    # Relationship
    monitor = relationship("Monitor", back_populates="logs")
