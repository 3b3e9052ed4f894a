"""Monitor model - registered check targets and their health."""
from sqlalchemy import Boolean, Column, Float, Integer, JSON, String, DateTime
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.timeutils import utcnow


class Monitor(Base):
    """A monitored target - HTTP, TCP, or ping check."""

    __tablename__ = "monitors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String, nullable=False)  # http, tcp, ping (immutable)
    name = Column(String, nullable=True)
    target = Column(String, nullable=False)  # URL or host
    interval_minutes = Column(Integer, nullable=False, default=10)
    active = Column(Boolean, nullable=False, default=True)

    # HTTP
    method = Column(String, nullable=False, default="GET")  # GET, HEAD, POST
    request_body = Column(String, nullable=True)  # POST only
    headers = Column(JSON, nullable=True)  # {name: value}
    validate_response = Column(Boolean, nullable=False, default=False)
    validation_rule = Column(String, nullable=True)  # contains, notContains, statusEquals, ...
    validation_value = Column(String, nullable=True)

    # TCP / ping
    port = Column(Integer, nullable=True)
    packet_count = Column(Integer, nullable=True)
    timeout_seconds = Column(Integer, nullable=True)
    max_packet_loss_percent = Column(Float, nullable=True)  # NULL = server default

    # Health, written only by the health updater
    last_status = Column(String, nullable=False, default="unknown")  # success, error, unknown
    last_checked_at = Column(DateTime, nullable=True)
    uptime_percent = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    logs = relationship(
        "CheckLog",
        back_populates="monitor",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
